"""Default forwarding of unconsumed output.

A Script's stdout/stderr that nobody claimed by the end of the event-loop
turn in which the Script was created are copied, in full, to the enclosing
capture's output or to the host process's output.

The decision is a single ``loop.call_soon`` callback posted from the Script
constructor. Consumers attaching synchronously after construction run before
it; anything that first yields to the loop runs after it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from .streams import ByteSink, ByteStream, pump

__all__ = ["StreamPolicy"]

logger = logging.getLogger(__name__)


class StreamPolicy:
    """Forwarding decision for one Script's output streams.

    Example:
        policy = StreamPolicy("ls", [(stdout, parent_stdout), (stderr, parent_stderr)])
        ...
        await policy.drained()  # forwarded bytes are now in the parent
    """

    def __init__(
        self,
        owner: str,
        routes: Sequence[tuple[ByteStream, ByteSink]],
    ) -> None:
        loop = asyncio.get_running_loop()
        self._owner = owner
        self._routes = list(routes)
        self._tasks: list[asyncio.Task[int]] = []
        self._settled: asyncio.Future[None] = loop.create_future()
        loop.call_soon(self._decide)

    @property
    def decided(self) -> bool:
        return self._settled.done()

    @property
    def forwarded(self) -> list[str]:
        """Names of the streams that were forwarded."""
        return [stream.name for stream, _ in self._routes if stream.is_forwarded]

    def _decide(self) -> None:
        loop = self._settled.get_loop()
        for stream, sink in self._routes:
            chunks = stream.take_for_forwarding()
            if chunks is None:
                continue
            logger.debug(f"Forwarding {stream.name} to {sink.name}")
            self._tasks.append(loop.create_task(pump(chunks, sink)))
        self._settled.set_result(None)

    async def drained(self) -> None:
        """Wait for the decision and for every forwarded copy to finish."""
        await asyncio.shield(self._settled)
        if not self._tasks:
            return
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Forwarding output of {self._owner!r} failed: {result}")
