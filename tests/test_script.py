"""Process-backed Script tests.

Test coverage:
- Output collection (output, output_bytes, lines)
- Default forwarding of unconsumed output to the host
- Exit status accessors and the "observed" rule
- Unhandled failures at top level
- Spawn failures (synchronous and at launch)
- Working directory, environment and stdin
- Script is an abstract base
"""

from __future__ import annotations

import asyncio
import gc
import stat
import sys
from pathlib import Path

import pytest

from cli_script import Script, ScriptException, SpawnError
from cli_script.errors import SPAWN_FAILURE_EXIT_CODE
from cli_script.runtime.process_runner import IS_WINDOWS


async def _wait_exited(script: Script) -> None:
    while not script.exited:
        await asyncio.sleep(0.05)
    # Let the unhandled-failure check scheduled after exit run
    await asyncio.sleep(0.1)


# =============================================================================
# Output
# =============================================================================


class TestOutput:
    """Collecting stdout."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_output_strips_trailing_newlines(self, child):
        """output() decodes stdout without the final newline."""
        assert await child("emit", "hello").output() == "hello"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_output_bytes(self, child):
        """output_bytes() returns raw stdout."""
        assert await child("emit", "hello").output_bytes() == b"hello\n"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_lines(self):
        """lines() yields stdout line by line."""
        script = Script.start(
            sys.executable, ["-c", "print('one'); print('two'); print('three')"]
        )
        assert [line async for line in script.lines()] == ["one", "two", "three"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_output_fails_like_done(self, child):
        """output() raises ScriptException after a failing exit."""
        with pytest.raises(ScriptException) as exc_info:
            await child("emit", "partial", "--exit-code", "3").output()
        assert exc_info.value.exit_code == 3

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_lines_fails_after_last_line(self, child):
        """lines() yields everything, then raises."""
        collected = []
        with pytest.raises(ScriptException):
            async for line in child("emit", "only", "--exit-code", "1").lines():
                collected.append(line)
        assert collected == ["only"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_lines_break_leaves_no_pending_error(self, child):
        """Stopping early on a failing script logs nothing to the loop."""
        loop = asyncio.get_running_loop()
        contexts: list[dict] = []
        loop.set_exception_handler(lambda loop, context: contexts.append(context))
        try:
            script = child("emit", "first", "--exit-code", "2")
            lines = script.lines()
            async for line in lines:
                assert line == "first"
                break
            await lines.aclose()
            await _wait_exited(script)
            gc.collect()
            await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(None)

        assert contexts == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stdout_consumed_twice_raises(self, child):
        """A stream has a single consumer."""
        script = child("emit", "hello")
        output = script.output()
        with pytest.raises(RuntimeError):
            script.stdout.claim()
        assert await output == "hello"


# =============================================================================
# Default Forwarding
# =============================================================================


class TestForwarding:
    """Unconsumed output goes to the host process."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_unconsumed_output_goes_to_host(self, child, capsys):
        """stdout and stderr nobody reads are forwarded."""
        script = child("emit", "hello", "--stderr", "oops")
        await script.done

        captured = capsys.readouterr()
        assert captured.out == "hello\n"
        assert captured.err == "oops\n"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_consumed_stream_is_not_forwarded(self, child, capsys):
        """Claiming stdout in the creation turn keeps it out of the host."""
        script = child("emit", "hello", "--stderr", "oops")
        assert await script.output() == "hello"

        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == "oops\n"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_late_consumer_gets_nothing(self, child, capsys):
        """After the creation turn the output is already forwarded."""
        script = child("emit", "hello")
        await asyncio.sleep(0)

        assert script.stdout.is_forwarded
        assert await script.stdout.read() == b""
        await script.done
        assert capsys.readouterr().out == "hello\n"


# =============================================================================
# Exit Status
# =============================================================================


class TestExitStatus:
    """done, exit_code, success, returncode."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_await_script_succeeds(self, child):
        """Awaiting a Script waits for a successful exit."""
        script = child("emit")
        await script
        assert script.exited
        assert script.returncode == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_done_raises_on_failure(self, child):
        """An unobserved non-zero exit fails done."""
        script = child("emit", "--exit-code", "2")
        with pytest.raises(ScriptException) as exc_info:
            await script.done
        assert exc_info.value.exit_code == 2
        assert exc_info.value.script_name == script.name
        assert "exited with code 2" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_exit_code_observes_failure(self, child):
        """Reading exit_code takes responsibility for the failure."""
        script = child("emit", "--exit-code", "5")
        assert await script.exit_code == 5
        # done now completes normally
        await script.done

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_success(self, child):
        """success reports whether the exit code was 0."""
        assert await child("emit").success is True
        assert await child("emit", "--exit-code", "1").success is False

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_returncode_none_while_running(self, child):
        """returncode does not wait."""
        script = child("sleep", "0.5")
        assert script.returncode is None
        assert not script.exited
        await script.done
        assert script.returncode == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_exited_does_not_observe(self, child):
        """Polling exited leaves done failing."""
        script = child("emit", "--exit-code", "4")
        done = script.done
        await _wait_exited(script)
        with pytest.raises(ScriptException):
            await done

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_repr(self, child):
        script = child("emit")
        assert "running" in repr(script)
        await script.done
        assert "exited(0)" in repr(script)


# =============================================================================
# Unhandled Failures
# =============================================================================


class TestUnhandledFailures:
    """Failures nobody listens to."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_reported_to_loop_exception_handler(self, child):
        """At top level the loop's exception handler receives the failure."""
        loop = asyncio.get_running_loop()
        contexts: list[dict] = []
        loop.set_exception_handler(lambda loop, context: contexts.append(context))
        try:
            script = child("emit", "--exit-code", "3")
            await _wait_exited(script)
        finally:
            loop.set_exception_handler(None)

        assert len(contexts) == 1
        error = contexts[0]["exception"]
        assert isinstance(error, ScriptException)
        assert error.exit_code == 3

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_observed_failure_not_reported(self, child):
        """Reading the status before exit keeps the failure quiet."""
        loop = asyncio.get_running_loop()
        contexts: list[dict] = []
        loop.set_exception_handler(lambda loop, context: contexts.append(context))
        try:
            script = child("emit", "--exit-code", "3")
            assert await script.exit_code == 3
            await asyncio.sleep(0.1)
        finally:
            loop.set_exception_handler(None)

        assert contexts == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_success_not_reported(self, child):
        loop = asyncio.get_running_loop()
        contexts: list[dict] = []
        loop.set_exception_handler(lambda loop, context: contexts.append(context))
        try:
            await _wait_exited(child("emit"))
        finally:
            loop.set_exception_handler(None)

        assert contexts == []


# =============================================================================
# Spawning
# =============================================================================


class TestSpawn:
    """Locating and launching executables."""

    @pytest.mark.asyncio
    async def test_missing_executable_raises_synchronously(self):
        """An unknown executable fails at the call site."""
        with pytest.raises(SpawnError) as exc_info:
            Script.start("cli-script-definitely-not-a-command")
        assert exc_info.value.executable == "cli-script-definitely-not-a-command"

    @pytest.mark.asyncio
    async def test_missing_path_raises_synchronously(self, tmp_path: Path):
        with pytest.raises(SpawnError):
            Script.start(tmp_path / "missing")

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX permissions")
    async def test_launch_failure_exits_126(self, tmp_path: Path):
        """A file that exists but cannot be executed fails at launch."""
        program = tmp_path / "not-executable"
        program.write_text("#!/bin/sh\necho hi\n")
        program.chmod(stat.S_IRUSR | stat.S_IWUSR)

        script = Script.start(program)
        with pytest.raises(SpawnError):
            await script.done

        script = Script.start(program)
        assert await script.exit_code == SPAWN_FAILURE_EXIT_CODE


# =============================================================================
# Process Options
# =============================================================================


class TestProcessOptions:
    """cwd, env and stdin."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cwd(self, tmp_path: Path):
        script = Script.start(
            sys.executable, ["-c", "import os; print(os.getcwd())"], cwd=tmp_path
        )
        assert Path(await script.output()).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_env_extends_parent(self):
        script = Script.start(
            sys.executable,
            ["-c", "import os; print(os.environ['CLI_SCRIPT_TEST_VALUE'], 'PATH' in os.environ)"],
            env={"CLI_SCRIPT_TEST_VALUE": "42"},
        )
        assert await script.output() == "42 True"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_env_without_parent(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CLI_SCRIPT_PARENT_ONLY", "1")
        script = Script.start(
            sys.executable,
            ["-c", "import os; print(os.environ.get('CLI_SCRIPT_PARENT_ONLY'))"],
            env={"CLI_SCRIPT_TEST_VALUE": "42"},
            include_parent_env=False,
        )
        assert await script.output() == "None"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stdin(self):
        """Bytes written before the process starts are delivered."""
        script = Script.start(
            sys.executable, ["-c", "import sys; sys.stdout.write(sys.stdin.read().upper())"]
        )
        output = script.output()
        script.stdin.write(b"abc")
        script.stdin.write("def")
        await script.stdin.aclose()
        assert await output == "ABCDEF"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stdin_after_exit_is_dropped(self, child):
        """Writing to an exited process neither raises nor blocks."""
        script = child("emit")
        await script.done
        script.stdin.write(b"late")
        assert script.stdin.closed

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_name_and_pid(self, child):
        script = Script.start(sys.executable, ["-c", "pass"], name="noop")
        assert script.name == "noop"
        await script.done
        assert script.pid is not None


# =============================================================================
# Base Class
# =============================================================================


class TestScriptBase:
    """Script is abstract; concrete kinds implement signal()."""

    def test_cannot_instantiate_base(self):
        with pytest.raises(TypeError, match="signal"):
            Script("bare", stdin=None, stdout=None, stderr=None)  # type: ignore[abstract, arg-type]

    def test_subclass_without_signal_is_abstract(self):
        class Silent(Script):
            pass

        with pytest.raises(TypeError):
            Silent("silent", stdin=None, stdout=None, stderr=None)  # type: ignore[abstract, arg-type]
