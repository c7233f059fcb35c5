"""In-process code as a Script.

``Script.capture(callback)`` runs ``callback(io)`` in its own task. The
callback reads ``io.stdin`` and writes through ``io.stdout``/``io.stderr``;
child Scripts it creates and leaves unconsumed forward their output into the
capture as well.

A failure escaping the callback, or a child failure nobody handled, never
raises at the call site: it becomes a diagnostic line on the capture's
stderr and exit code 256.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Union

import anyio

from .errors import UNHANDLED_ERROR_EXIT_CODE
from .runtime.process_runner import DEFAULT_SIGNAL
from .runtime.scope import CaptureScope
from .runtime.streams import ByteChannel, ByteSink, ByteStream
from .script import Script

__all__ = [
    "CaptureCallback",
    "CaptureIO",
    "CaptureScript",
    "byte_transformer_script",
    "line_transformer_script",
    "map_lines_script",
]

logger = logging.getLogger(__name__)


@dataclass
class CaptureIO:
    """Standard streams handed to a capture callback.

    Attributes:
        stdin: Bytes written to the capture Script's stdin
        stdout: Becomes the capture Script's stdout
        stderr: Becomes the capture Script's stderr
    """

    stdin: ByteStream
    stdout: ByteSink
    stderr: ByteSink

    def print(self, *values: object, sep: str = " ", end: str = "\n", err: bool = False) -> None:
        """``print`` into the capture's stdout (or stderr with ``err=True``)."""
        sink = self.stderr if err else self.stdout
        sink.print(*values, sep=sep, end=end)


CaptureCallback = Callable[[CaptureIO], Union[Awaitable[None], None]]


class CaptureScript(Script):
    """A Script backed by an in-process callback.

    Signals are accepted while the callback runs but have no effect on it.

    Example:
        async def greet(io: CaptureIO) -> None:
            name = (await io.stdin.text()) or "world"
            io.print(f"hello {name}")

        script = Script.capture(greet)
        script.stdin.write(b"python")
        script.stdin.close()
        assert await script.output() == "hello python"
    """

    def __init__(self, callback: CaptureCallback, *, name: str | None = None) -> None:
        name = name or "capture"
        self._stdin_channel = ByteChannel(f"{name} stdin")
        self._stdout_channel = ByteChannel(f"{name} stdout")
        self._stderr_channel = ByteChannel(f"{name} stderr")

        super().__init__(
            name,
            stdin=self._stdin_channel.sink,
            stdout=ByteStream(self._stdout_channel.chunks(), name=f"{name} stdout"),
            stderr=ByteStream(self._stderr_channel.chunks(), name=f"{name} stderr"),
        )

        self.io = CaptureIO(
            stdin=ByteStream(self._stdin_channel.chunks(), name=f"{name} input"),
            stdout=self._stdout_channel.sink,
            stderr=self._stderr_channel.sink,
        )
        self._capture_scope = CaptureScope(
            name,
            stdout=self._stdout_channel.sink,
            stderr=self._stderr_channel.sink,
            parent=self._scope,
        )
        self._start(self._run(callback))

    async def signal(self, sig: int = DEFAULT_SIGNAL) -> bool:
        if self._exit.resolved:
            return False
        logger.debug(f"Capture {self.name!r} ignores signal {sig}")
        return True

    async def _run(self, callback: CaptureCallback) -> int:
        # Only this task (and tasks it creates) sees the capture as current
        self._capture_scope.enter()
        failure: BaseException | None = None
        try:
            try:
                result = callback(self.io)
                if inspect.isawaitable(result):
                    await result
            except (asyncio.CancelledError, anyio.get_cancelled_exc_class()):
                raise
            except Exception as e:
                failure = e
            # Children left running still write into this capture
            await self._capture_scope.settle()
        finally:
            self._capture_scope.close()

        failure = failure or self._capture_scope.failure
        code = 0
        if failure is not None:
            logger.debug(f"Capture {self.name!r} failed: {failure!r}", exc_info=failure)
            if not self.io.stderr.closed:
                self.io.stderr.write(f"Unhandled {type(failure).__name__}: {failure}\n")
            code = UNHANDLED_ERROR_EXIT_CODE

        self._stdout_channel.sink.close()
        self._stderr_channel.sink.close()
        self._stdin_channel.shutdown()
        return code


def byte_transformer_script(
    transform: Callable[[AsyncIterator[bytes]], AsyncIterator[bytes]],
    *,
    name: str | None = None,
) -> CaptureScript:
    """Capture that writes ``transform(stdin chunks)`` to stdout.

    Finishes once stdin is closed and the transform is exhausted.
    """

    async def _transform(io: CaptureIO) -> None:
        async for chunk in transform(io.stdin.claim()):
            io.stdout.write(chunk)

    return CaptureScript(_transform, name=name or "byte transformer")


def line_transformer_script(
    transform: Callable[[AsyncIterator[str]], AsyncIterator[str]],
    *,
    name: str | None = None,
) -> CaptureScript:
    """Capture that writes ``transform(stdin lines)`` to stdout, one per line."""

    async def _transform(io: CaptureIO) -> None:
        async for line in transform(io.stdin.lines()):
            io.stdout.write(line + "\n")

    return CaptureScript(_transform, name=name or "line transformer")


def map_lines_script(mapper: Callable[[str], str], *, name: str | None = None) -> CaptureScript:
    """Capture that writes ``mapper(line)`` for every stdin line."""

    async def _map(lines: AsyncIterator[str]) -> AsyncIterator[str]:
        async for line in lines:
            yield mapper(line)

    return line_transformer_script(_map, name=name or "map lines")
