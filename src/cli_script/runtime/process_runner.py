"""Process spawning and signal delivery.

cli-script runtime module

This module provides:
- Executable lookup that fails fast with SpawnError
- Subprocess creation with all three standard streams piped
- Optional isolation (new session/process group) for child processes
- Signal delivery to the process, or to its whole group when isolated

Key design points:
- POSIX: start_new_session=True creates a new process group when isolated
- Windows: CREATE_NEW_PROCESS_GROUP for isolation, CTRL_BREAK_EVENT for SIGINT
- Delivery never waits for the process to react
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import SpawnError

__all__ = [
    "DEFAULT_SIGNAL",
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
    "build_environment",
    "describe_argv",
    "resolve_executable",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Signal sent by Script.signal() when none is given
DEFAULT_SIGNAL = signal.SIGTERM


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the resolved executable)
        cwd: Working directory for the process (None = inherit)
        env: Full environment for the process (None = inherit parent)
        isolate: Start the process in its own session/process group
    """

    argv: list[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    isolate: bool = False


def build_environment(
    env: Mapping[str, str] | None,
    include_parent_env: bool = True,
) -> dict[str, str] | None:
    """Merge caller-supplied variables with the parent environment.

    Returns:
        The environment to pass, or None to inherit the parent's unchanged
    """
    if env is None and include_parent_env:
        return None
    merged = dict(os.environ) if include_parent_env else {}
    if env:
        merged.update(env)
    return merged


def resolve_executable(
    executable: str,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Locate an executable the way the OS would when spawning it.

    Names containing a path separator are resolved against ``cwd``; bare
    names are searched on the effective PATH.

    Raises:
        SpawnError: If the executable cannot be located
    """
    if not executable:
        raise SpawnError(executable, "empty executable name")

    has_separator = os.sep in executable or (os.altsep is not None and os.altsep in executable)
    if has_separator:
        path = Path(executable)
        if not path.is_absolute() and cwd is not None:
            path = Path(cwd) / path
        if not path.exists():
            raise SpawnError(executable, "no such file")
        return str(path)

    search_path = env.get("PATH") if env is not None else None
    found = shutil.which(executable, path=search_path)
    if found is None:
        raise SpawnError(executable, "executable not found on PATH")
    return found


async def read_chunks(
    reader: asyncio.StreamReader | None, chunk_size: int
) -> AsyncIterator[bytes]:
    """Yield chunks from a process pipe until EOF."""
    if reader is None:
        return
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        yield chunk


@dataclass
class ProcessRunner:
    """Spawns processes and delivers signals to them.

    Example:
        runner = ProcessRunner()
        spec = ProcessSpec(argv=[resolve_executable("ls"), "-l"], cwd=Path("/tmp"))
        process = await runner.spawn(spec)
        runner.deliver_signal(process, signal.SIGTERM, isolated=spec.isolate)
    """

    chunk_size: int = 4096

    async def spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the process with stdin/stdout/stderr piped.

        Raises:
            OSError: If the OS refuses to launch the executable
        """
        kwargs = self._build_subprocess_kwargs(spec)

        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd} isolate={spec.isolate}"
        )
        return process

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd

        # Environment
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if spec.isolate:
            if IS_WINDOWS:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                # POSIX: start_new_session (equivalent to setsid)
                kwargs["start_new_session"] = True

        return kwargs

    def deliver_signal(
        self,
        process: asyncio.subprocess.Process,
        sig: int,
        *,
        isolated: bool = False,
    ) -> bool:
        """Request delivery of ``sig`` without waiting for a reaction.

        Returns:
            False if the process had already exited, True otherwise
        """
        if process.returncode is not None:
            return False

        try:
            if IS_WINDOWS:
                self._windows_signal(process, sig, isolated=isolated)
            elif isolated:
                self._posix_signal_group(process, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={process.pid}")
            return False

        logger.debug(f"Sent {_signal_name(sig)} to pid={process.pid}")
        return True

    def _posix_signal_group(
        self,
        process: asyncio.subprocess.Process,
        sig: int,
    ) -> None:
        """Send a signal to the process group on POSIX systems.

        Args:
            process: The subprocess
            sig: Signal number
        """
        try:
            # Same as pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, sig)
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(sig)

    def _windows_signal(
        self,
        process: asyncio.subprocess.Process,
        sig: int,
        *,
        isolated: bool,
    ) -> None:
        """Deliver a signal on Windows.

        Only SIGTERM (terminate) is generally available; SIGINT maps to
        CTRL_BREAK_EVENT for processes started in their own group.
        """
        if isolated and sig == signal.SIGINT:
            try:
                os.kill(process.pid, signal.CTRL_BREAK_EVENT)
                return
            except OSError as e:
                logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
        process.send_signal(sig)

    def close_output_pipe(self, process: asyncio.subprocess.Process, fd: int) -> None:
        """Close our end of the process's stdout (1) or stderr (2) pipe.

        The process sees a broken pipe on its next write.
        """
        transport = getattr(process, "_transport", None)
        if transport is None:
            return
        pipe = transport.get_pipe_transport(fd)
        if pipe is not None and not pipe.is_closing():
            logger.debug(f"Closing pipe fd={fd} of pid={process.pid}")
            pipe.close()


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


def describe_argv(executable: str, args: Sequence[str]) -> str:
    """Human-readable command line for names and diagnostics."""
    return shlex.join([executable, *args])
