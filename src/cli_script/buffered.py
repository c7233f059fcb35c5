"""Captures whose output and completion are held until released.

A BufferedScript starts its callback immediately but keeps everything it
writes in memory. Nothing reaches its stdout/stderr, and its exit code does
not resolve, until ``release()`` is awaited. This decouples starting work
from consuming its result, e.g. running several captures concurrently and
printing their output one after another.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from .capture import CaptureCallback, CaptureScript
from .runtime.process_runner import DEFAULT_SIGNAL
from .runtime.streams import ByteChannel, ByteSink, ByteStream
from .script import Script

__all__ = ["BufferedScript"]

logger = logging.getLogger(__name__)


class _HeldOutput:
    """Copies one output stream, holding chunks back until released."""

    def __init__(self, chunks: AsyncIterator[bytes], sink: ByteSink) -> None:
        self._chunks = chunks
        self._sink = sink
        self._held: list[bytes] = []
        self._released = False
        self._finished = False
        self.task = asyncio.get_running_loop().create_task(self._copy())

    @property
    def held_bytes(self) -> int:
        return sum(len(chunk) for chunk in self._held)

    async def _copy(self) -> None:
        async for chunk in self._chunks:
            if self._released:
                self._sink.write(chunk)
            else:
                self._held.append(chunk)
        self._finished = True
        if self._released:
            self._sink.close()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        for chunk in self._held:
            self._sink.write(chunk)
        self._held.clear()
        if self._finished:
            self._sink.close()


class BufferedScript(Script):
    """A capture that withholds its output and exit code until released.

    ``signal()`` is forwarded to the wrapped capture: accepted (and ignored)
    while the callback runs, refused once it has finished, even though the
    BufferedScript itself has not exited yet.

    Example:
        script = BufferedScript.capture(build_report)
        text = script.output()       # pending until release
        ...
        await script.release()
        print(await text)
    """

    def __init__(self, callback: CaptureCallback, *, name: str | None = None) -> None:
        name = name or "buffered capture"
        self._inner = CaptureScript(callback, name=name)
        self._inner._supervised = True

        stdout_channel = ByteChannel(f"{name} stdout")
        stderr_channel = ByteChannel(f"{name} stderr")
        self._outputs = [
            _HeldOutput(self._inner.stdout.claim(), stdout_channel.sink),
            _HeldOutput(self._inner.stderr.claim(), stderr_channel.sink),
        ]
        self._released = asyncio.Event()

        super().__init__(
            name,
            stdin=self._inner.stdin,
            stdout=ByteStream(stdout_channel.chunks(), name=f"{name} stdout"),
            stderr=ByteStream(stderr_channel.chunks(), name=f"{name} stderr"),
        )
        self._start(self._run())

    @classmethod
    def capture(cls, callback: CaptureCallback, *, name: str | None = None) -> BufferedScript:
        """Run ``callback`` as a buffered capture."""
        return cls(callback, name=name)

    @property
    def released(self) -> bool:
        return self._released.is_set()

    async def release(self) -> None:
        """Emit the buffered output and let the exit code resolve.

        Output produced after this streams through live. Calling it again
        does nothing.
        """
        if self._released.is_set():
            return
        held = sum(output.held_bytes for output in self._outputs)
        logger.debug(f"Releasing {held} buffered bytes of {self.name!r}")
        for output in self._outputs:
            output.release()
        self._released.set()

    async def signal(self, sig: int = DEFAULT_SIGNAL) -> bool:
        return await self._inner.signal(sig)

    async def _run(self) -> int:
        code = await self._inner._exit.wait()
        await self._released.wait()
        await asyncio.gather(*(output.task for output in self._outputs))
        return code
