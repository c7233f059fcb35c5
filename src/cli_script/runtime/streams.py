"""Byte streams, sinks and in-process channels.

This module provides:
- ByteStream: a lazy, single-subscriber, forward-once source of byte chunks
- ByteSink: the writable side (script stdin, capture stdout/stderr, host output)
- ByteChannel: an in-process pipe built on an anyio memory object stream
- pump(): copies a chunk iterator into a sink

Key design points:
- A ByteStream is claimed synchronously by whoever consumes it first, so a
  consumer that attaches in the Script's creation turn beats default forwarding
- Channels are unbounded; writes never suspend, drain() is where backpressure
  would go for process pipes
- Writes to a sink whose reader is gone are dropped and logged at debug level
"""

from __future__ import annotations

import logging
import math
import sys
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable
from enum import Enum

import anyio
from anyio.abc import ObjectSendStream

__all__ = [
    "ByteChannel",
    "ByteSink",
    "ByteStream",
    "ChannelSink",
    "HostSink",
    "iter_lines",
    "pump",
]

logger = logging.getLogger(__name__)


def _to_bytes(data: bytes | bytearray | memoryview | str) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


async def _empty() -> AsyncIterator[bytes]:
    return
    yield b""  # pragma: no cover


async def _aclose(chunks: AsyncIterator[bytes]) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()


# =============================================================================
# Sinks
# =============================================================================


class ByteSink(ABC):
    """Writable byte destination.

    ``write`` never suspends. Callers that care about backpressure await
    ``drain`` after writing.
    """

    name: str = "sink"

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the sink was closed or its reader went away."""

    @abstractmethod
    def write(self, data: bytes | str) -> None:
        """Write bytes (str is encoded as UTF-8)."""

    async def drain(self) -> None:
        """Wait until buffered data has been handed to the reader."""

    @abstractmethod
    def close(self) -> None:
        """Close the sink; the reader sees end of input."""

    async def aclose(self) -> None:
        """Close the sink and wait for the close to take effect."""
        self.close()

    def print(self, *values: object, sep: str = " ", end: str = "\n") -> None:
        """Write values the way the builtin ``print`` formats them."""
        self.write(sep.join(str(value) for value in values) + end)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"{type(self).__name__}(name={self.name!r}, {state})"


class ChannelSink(ByteSink):
    """Write side of a ByteChannel."""

    def __init__(self, send: ObjectSendStream[bytes], name: str) -> None:
        self._send = send
        self.name = name
        self._closed = False
        self._broken = False

    @property
    def closed(self) -> bool:
        return self._closed or self._broken

    def write(self, data: bytes | str) -> None:
        if self._closed:
            raise RuntimeError(f"{self.name} is closed")
        chunk = _to_bytes(data)
        if not chunk or self._broken:
            return
        try:
            self._send.send_nowait(chunk)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            # Reader is gone (the script exited); drop like a closed pipe
            self._broken = True
            logger.debug(f"Dropped {len(chunk)} bytes written to {self.name} after exit")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._send.close()


class HostSink(ByteSink):
    """The host process's stdout or stderr.

    The target is looked up on ``sys`` at write time so redirections made
    after import (test capture, contextlib.redirect_stdout) are honoured.
    """

    def __init__(self, stream_name: str) -> None:
        if stream_name not in ("stdout", "stderr"):
            raise ValueError(f"Unknown host stream: {stream_name}")
        self._stream_name = stream_name
        self.name = f"host {stream_name}"

    @property
    def closed(self) -> bool:
        return False

    def write(self, data: bytes | str) -> None:
        chunk = _to_bytes(data)
        stream = getattr(sys, self._stream_name)
        buffer = getattr(stream, "buffer", None)
        if buffer is not None:
            # Flush pending text first so print() and forwarded bytes stay ordered
            stream.flush()
            buffer.write(chunk)
            buffer.flush()
        else:
            stream.write(chunk.decode("utf-8", errors="replace"))
            stream.flush()

    def close(self) -> None:
        """The host streams stay open."""


# =============================================================================
# Streams
# =============================================================================


class _StreamState(Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    FORWARDED = "forwarded"


class ByteStream:
    """Lazy single-subscriber source of byte chunks.

    The first consumer claims the stream; once claimed or forwarded the
    underlying chunks are not available again.

    Example:
        async for chunk in script.stdout:
            handle(chunk)

        text = await script.stdout.text()
    """

    def __init__(self, source: AsyncIterator[bytes], *, name: str) -> None:
        self._source = source
        self._state = _StreamState.PENDING
        self.name = name

    @property
    def is_pending(self) -> bool:
        return self._state is _StreamState.PENDING

    @property
    def is_claimed(self) -> bool:
        return self._state is _StreamState.CLAIMED

    @property
    def is_forwarded(self) -> bool:
        return self._state is _StreamState.FORWARDED

    def claim(self) -> AsyncIterator[bytes]:
        """Attach the single consumer and return the chunk iterator.

        Raises:
            RuntimeError: If another consumer already claimed the stream
        """
        if self._state is _StreamState.FORWARDED:
            logger.debug(
                f"{self.name} was already forwarded to the enclosing output; "
                "attach consumers in the same turn the script is created"
            )
            return _empty()
        if self._state is _StreamState.CLAIMED:
            raise RuntimeError(f"{self.name} already has a consumer")
        self._state = _StreamState.CLAIMED
        return self._source

    def take_for_forwarding(self) -> AsyncIterator[bytes] | None:
        """Hand the chunks to the default forwarder if nobody claimed them."""
        if self._state is not _StreamState.PENDING:
            return None
        self._state = _StreamState.FORWARDED
        return self._source

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.claim()

    def read(self) -> Awaitable[bytes]:
        """Claim now and collect every chunk."""
        return _collect(self.claim())

    def text(self, encoding: str = "utf-8") -> Awaitable[str]:
        """Claim now and decode everything, trailing newlines removed."""
        return _collect_text(self.claim(), encoding)

    def lines(self, encoding: str = "utf-8") -> AsyncIterator[str]:
        """Claim now and iterate decoded lines."""
        return iter_lines(self.claim(), encoding)

    def __repr__(self) -> str:
        return f"ByteStream(name={self.name!r}, state={self._state.value})"


async def _collect(chunks: AsyncIterator[bytes]) -> bytes:
    parts = [chunk async for chunk in chunks]
    return b"".join(parts)


async def _collect_text(chunks: AsyncIterator[bytes], encoding: str) -> str:
    data = await _collect(chunks)
    return data.decode(encoding, errors="replace").rstrip("\r\n")


async def iter_lines(
    chunks: AsyncIterator[bytes], encoding: str = "utf-8"
) -> AsyncIterator[str]:
    """Split a chunk iterator into decoded lines without line terminators."""
    pending = b""
    async for chunk in chunks:
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for line in complete:
            yield line.rstrip(b"\r").decode(encoding, errors="replace")
    if pending:
        yield pending.rstrip(b"\r").decode(encoding, errors="replace")


# =============================================================================
# Channels
# =============================================================================


class ByteChannel:
    """In-process pipe: a ChannelSink feeding a chunk iterator.

    Example:
        channel = ByteChannel("capture stdout")
        channel.sink.write(b"hello")
        channel.sink.close()
        data = await ByteStream(channel.chunks(), name="out").read()
    """

    def __init__(self, name: str) -> None:
        send, receive = anyio.create_memory_object_stream(math.inf)
        self.name = name
        self.sink = ChannelSink(send, name)
        self._receive = receive

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield chunks until the sink is closed."""
        try:
            async for chunk in self._receive:
                yield chunk
        finally:
            self._receive.close()

    def shutdown(self) -> None:
        """Stop accepting data; later writes are dropped."""
        self._receive.close()


async def pump(
    chunks: AsyncIterator[bytes],
    sink: ByteSink,
    *,
    close_sink: bool = False,
) -> int:
    """Copy chunks into a sink until the source ends or the sink breaks.

    When the sink breaks the source is closed, which a process upstream
    observes as a broken pipe.

    Returns:
        Number of bytes copied
    """
    copied = 0
    try:
        async for chunk in chunks:
            if sink.closed:
                logger.debug(f"{sink.name} closed, stopping copy")
                break
            sink.write(chunk)
            await sink.drain()
            copied += len(chunk)
    finally:
        await _aclose(chunks)
        if close_sink and not sink.closed:
            await sink.aclose()
    return copied
