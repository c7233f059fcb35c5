"""The Script abstraction and its process-backed variant.

A Script looks like a process whether it wraps an OS process or in-process
code: it has a stdin sink, stdout/stderr byte streams, an exit code, and
can be composed with ``|``.

Key design points:
- Scripts are created synchronously inside a running event loop
- Output nobody consumes in the creation turn is forwarded to the enclosing
  capture or to the host process (see runtime.forwarding)
- A non-zero exit becomes ScriptException through ``done`` unless the raw
  status was read first (``exit_code``, ``success``, ``returncode``)
- Failures nobody listens to are reported to the enclosing capture, or to
  the event loop's exception handler at top level
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Mapping, Sequence
from os import PathLike
from pathlib import Path
from typing import TYPE_CHECKING, Any

import anyio

from .config import get_config
from .errors import SPAWN_FAILURE_EXIT_CODE, UNHANDLED_ERROR_EXIT_CODE, SpawnError
from .runtime.exit_signal import ExitSignal
from .runtime.forwarding import StreamPolicy
from .runtime.process_runner import (
    DEFAULT_SIGNAL,
    ProcessRunner,
    ProcessSpec,
    build_environment,
    describe_argv,
    read_chunks,
    resolve_executable,
)
from .runtime.scope import current_scope, output_sinks, report_unhandled
from .runtime.streams import ByteChannel, ByteSink, ByteStream

if TYPE_CHECKING:
    from .capture import CaptureCallback
    from .pipeline import Pipeline

__all__ = ["ProcessScript", "Script"]

logger = logging.getLogger(__name__)


def _retrieve(future: asyncio.Future[Any]) -> None:
    # Mark the exception retrieved; callers see it through shielded copies
    if not future.cancelled():
        future.exception()


class Script(ABC):
    """A process-like unit of work.

    Attributes:
        name: Human-readable identity used in diagnostics
        stdin: Sink feeding the script's input
        stdout: The script's standard output
        stderr: The script's standard error

    Example:
        script = Script.start("ls", ["-l"])
        async for line in script.lines():
            print(line)

        pipeline = Script.start("cat", ["log.txt"]) | Script.start("grep", ["ERROR"])
        await pipeline.done
    """

    def __init__(
        self,
        name: str,
        *,
        stdin: ByteSink,
        stdout: ByteStream,
        stderr: ByteStream,
        forward: Sequence[str] = ("stdout", "stderr"),
    ) -> None:
        self.name = name
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr

        self._exit = ExitSignal()
        self._exit_error: BaseException | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._done: asyncio.Future[None] | None = None
        # Set by an owner (pipeline, buffered capture) that handles our failures
        self._supervised = False
        self._reported = False

        self._scope = current_scope()
        parent_stdout, parent_stderr = output_sinks(self._scope)
        routes = []
        if "stdout" in forward:
            routes.append((stdout, parent_stdout))
        if "stderr" in forward:
            routes.append((stderr, parent_stderr))
        self._forwarding = StreamPolicy(name, routes)
        if self._scope is not None:
            self._scope.adopt(self)

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def start(
        cls,
        executable: str | PathLike[str],
        args: Sequence[str | PathLike[str]] = (),
        *,
        cwd: str | PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        include_parent_env: bool = True,
        name: str | None = None,
        isolate: bool | None = None,
    ) -> ProcessScript:
        """Start an OS process.

        Args:
            executable: Program name (searched on PATH) or path
            args: Arguments, not interpreted by any shell
            cwd: Working directory
            env: Extra environment variables
            include_parent_env: Start from the parent's environment
            name: Name for diagnostics (defaults to the command line)
            isolate: Own session/process group (defaults to config)

        Raises:
            SpawnError: If the executable cannot be located
        """
        cwd_path = Path(cwd) if cwd is not None else None
        environment = build_environment(env, include_parent_env)
        str_args = [str(arg) for arg in args]
        resolved = resolve_executable(str(executable), cwd=cwd_path, env=environment)

        config = get_config()
        spec = ProcessSpec(
            argv=[resolved, *str_args],
            cwd=cwd_path,
            env=environment,
            isolate=config.isolate if isolate is None else isolate,
        )
        runner = ProcessRunner(chunk_size=config.chunk_size)
        return ProcessScript(
            spec,
            name=name or describe_argv(str(executable), str_args),
            runner=runner,
        )

    @classmethod
    def capture(cls, callback: CaptureCallback, *, name: str | None = None) -> Script:
        """Run in-process code as a Script.

        See CaptureScript for the callback contract.
        """
        from .capture import CaptureScript

        return CaptureScript(callback, name=name)

    @classmethod
    def from_byte_transformer(
        cls,
        transform: Callable[[AsyncIterator[bytes]], AsyncIterator[bytes]],
        *,
        name: str | None = None,
    ) -> Script:
        """Script that pipes its stdin through ``transform`` to stdout."""
        from .capture import byte_transformer_script

        return byte_transformer_script(transform, name=name)

    @classmethod
    def from_line_transformer(
        cls,
        transform: Callable[[AsyncIterator[str]], AsyncIterator[str]],
        *,
        name: str | None = None,
    ) -> Script:
        """Script that pipes its stdin lines through ``transform``."""
        from .capture import line_transformer_script

        return line_transformer_script(transform, name=name)

    @classmethod
    def map_lines(cls, mapper: Callable[[str], str], *, name: str | None = None) -> Script:
        """Script that writes ``mapper(line)`` for every stdin line."""
        from .capture import map_lines_script

        return map_lines_script(mapper, name=name)

    # -------------------------------------------------------------------------
    # Exit status
    # -------------------------------------------------------------------------

    @property
    def exited(self) -> bool:
        """Whether the exit code has resolved. Does not observe it."""
        return self._exit.resolved

    @property
    def exit_code(self) -> asyncio.Future[int]:
        """Exit code; reading it means the caller handles failures."""
        self._exit.mark_observed()
        return self._exit.derive(lambda code: code)

    @property
    def success(self) -> asyncio.Future[bool]:
        """Whether the exit code is 0; reading it means the caller handles failures."""
        self._exit.mark_observed()
        return self._exit.derive(lambda code: code == 0)

    @property
    def returncode(self) -> int | None:
        """Exit code without waiting, None while running."""
        self._exit.mark_observed()
        return self._exit.peek()

    @property
    def done(self) -> asyncio.Future[None]:
        """Completes when the script exits; fails with ScriptException on
        an unobserved non-zero exit."""
        return asyncio.shield(self._listen())

    def _listen(self) -> asyncio.Future[None]:
        # A listener exists from here on, so failures are not reported as unhandled
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
            self._done.add_done_callback(_retrieve)
            if self._exit.resolved:
                self._settle_done()
        return self._done

    def __await__(self):
        return self.done.__await__()

    def _settle_done(self) -> None:
        assert self._done is not None
        if self._done.done():
            return
        error = self._exit.outcome(self.name)
        if error is None:
            self._done.set_result(None)
        else:
            self._done.set_exception(error)

    def _start(self, computation: Coroutine[Any, Any, int]) -> None:
        """Run the backing computation; its return value is the exit code."""
        loop = asyncio.get_running_loop()
        self._exit_task = loop.create_task(self._resolve_exit(computation))

    async def _resolve_exit(self, computation: Coroutine[Any, Any, int]) -> None:
        try:
            code = await computation
        except (asyncio.CancelledError, anyio.get_cancelled_exc_class()):
            raise
        except Exception as e:
            logger.error(f"Script {self.name!r} failed internally: {e}", exc_info=True)
            self._exit_error = e
            code = UNHANDLED_ERROR_EXIT_CODE

        await self._forwarding.drained()
        self._exit.resolve(code, error=self._exit_error)
        logger.debug(f"Script {self.name!r} exited with code {code}")
        self._on_exit()

    def _on_exit(self) -> None:
        if self._done is not None:
            self._settle_done()
            return
        if self._supervised or self._exit.outcome(self.name) is None:
            return
        # Give callers that are about to listen one more turn
        asyncio.get_running_loop().call_soon(self._check_unhandled)

    def _check_unhandled(self) -> None:
        if self._done is not None or self._supervised or self._reported:
            return
        error = self._exit.outcome(self.name)
        if error is not None:
            self._reported = True
            report_unhandled(error, self._scope, self.name)

    async def _settle(self) -> None:
        """Wait for exit if output still forwards into the enclosing capture."""
        if self._supervised:
            return
        await self._forwarding.drained()
        if not self._forwarding.forwarded:
            return
        await self._exit.wait()
        # Same grace turn as _on_exit, then report while the capture is active
        await asyncio.sleep(0)
        self._check_unhandled()

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    @abstractmethod
    async def signal(self, sig: int = DEFAULT_SIGNAL) -> bool:
        """Ask the script to handle ``sig``.

        Returns:
            True if the request was accepted, False if the script already exited
        """
        ...

    # -------------------------------------------------------------------------
    # Output helpers
    # -------------------------------------------------------------------------

    def output(self, encoding: str = "utf-8") -> asyncio.Task[str]:
        """Decoded stdout with trailing newlines removed.

        Claims stdout immediately; the task fails like ``done``.
        """
        return self._collect(self.stdout.text(encoding))

    def output_bytes(self) -> asyncio.Task[bytes]:
        """Raw stdout; claims it immediately and fails like ``done``."""
        return self._collect(self.stdout.read())

    def lines(self, encoding: str = "utf-8") -> AsyncIterator[str]:
        """Iterate stdout lines; raises like ``done`` after the last line."""
        self._listen()
        return self._lines(self.stdout.lines(encoding))

    def _collect(self, result: Awaitable[Any]) -> asyncio.Task[Any]:
        self._listen()

        async def _wait() -> Any:
            value = await result
            await self.done
            return value

        return asyncio.get_running_loop().create_task(_wait())

    async def _lines(self, lines: AsyncIterator[str]) -> AsyncIterator[str]:
        async for line in lines:
            yield line
        await self.done

    # -------------------------------------------------------------------------
    # Composition
    # -------------------------------------------------------------------------

    def __or__(self, other: object) -> Pipeline:
        if not isinstance(other, Script):
            return NotImplemented
        from .pipeline import Pipeline

        return Pipeline([self, other])

    def __repr__(self) -> str:
        code = self._exit.peek()
        status = "running" if code is None else f"exited({code})"
        return f"{type(self).__name__}(name={self.name!r}, {status})"


class ProcessScript(Script):
    """A Script backed by an OS process.

    Created through ``Script.start``. The process is spawned in a task; bytes
    written to stdin before it starts are delivered once it does.
    """

    def __init__(
        self,
        spec: ProcessSpec,
        *,
        name: str,
        runner: ProcessRunner | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.spec = spec
        self._runner = runner or ProcessRunner(chunk_size=get_config().chunk_size)
        self._process: asyncio.subprocess.Process | None = None
        self._spawned: asyncio.Future[asyncio.subprocess.Process | None] = loop.create_future()
        self._stdin_channel = ByteChannel(f"{name} stdin")

        super().__init__(
            name,
            stdin=self._stdin_channel.sink,
            stdout=ByteStream(self._read_output(1), name=f"{name} stdout"),
            stderr=ByteStream(self._read_output(2), name=f"{name} stderr"),
        )
        self._start(self._run())

    @property
    def pid(self) -> int | None:
        """OS process id, None until spawned (or if spawning failed)."""
        return self._process.pid if self._process is not None else None

    async def signal(self, sig: int = DEFAULT_SIGNAL) -> bool:
        if self._exit.resolved:
            return False
        process = await asyncio.shield(self._spawned)
        if process is None:
            return False
        return self._runner.deliver_signal(process, sig, isolated=self.spec.isolate)

    async def _run(self) -> int:
        loop = asyncio.get_running_loop()
        try:
            process = await self._runner.spawn(self.spec)
        except OSError as e:
            error = SpawnError(self.spec.argv[0], e.strerror or str(e))
            error.__cause__ = e
            logger.error(f"Failed to launch {self.name!r}: {e}")
            self._exit_error = error
            self._spawned.set_result(None)
            self._stdin_channel.shutdown()
            return SPAWN_FAILURE_EXIT_CODE

        self._process = process
        self._spawned.set_result(process)
        stdin_task = loop.create_task(self._feed_stdin(process))

        code = await process.wait()

        # Input written after exit is dropped
        self._stdin_channel.shutdown()
        if not stdin_task.done():
            stdin_task.cancel()
        try:
            await stdin_task
        except asyncio.CancelledError:
            if not stdin_task.cancelled():
                raise
        return code

    async def _feed_stdin(self, process: asyncio.subprocess.Process) -> None:
        writer = process.stdin
        if writer is None:
            return
        try:
            async for chunk in self._stdin_channel.chunks():
                writer.write(chunk)
                await writer.drain()
            writer.close()
            await writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"stdin of {self.name!r} closed by the process: {e}")
            self._stdin_channel.shutdown()

    async def _read_output(self, fd: int) -> AsyncIterator[bytes]:
        process = await asyncio.shield(self._spawned)
        if process is None:
            return
        reader = process.stdout if fd == 1 else process.stderr
        finished = False
        try:
            async for chunk in read_chunks(reader, self._runner.chunk_size):
                yield chunk
            finished = True
        finally:
            if not finished:
                # Consumer went away: the process sees a broken pipe
                self._runner.close_output_pipe(process, fd)
