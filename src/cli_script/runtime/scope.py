"""Active capture tracking.

The capture currently running is held in a ContextVar. asyncio tasks copy
the context when they are created, so every Script created inside a capture
callback (directly or from tasks it spawns) sees that capture as its
enclosing output and as the place its unhandled failures go.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .streams import ByteSink, HostSink

if TYPE_CHECKING:
    from ..script import Script

__all__ = [
    "CaptureScope",
    "current_scope",
    "output_sinks",
    "report_unhandled",
]

logger = logging.getLogger(__name__)

HOST_STDOUT = HostSink("stdout")
HOST_STDERR = HostSink("stderr")

_current_scope: contextvars.ContextVar[CaptureScope | None] = contextvars.ContextVar(
    "cli_script_capture_scope", default=None
)


@dataclass(eq=False)
class CaptureScope:
    """Output sinks and failure slot of one running capture.

    Attributes:
        name: Name of the capture Script
        stdout: Where unconsumed child stdout is forwarded
        stderr: Where unconsumed child stderr is forwarded
        parent: Enclosing scope (None at top level)
        failure: First unhandled failure reported while active
        active: False once the capture callback has finished
        children: Scripts created while active, not yet settled
    """

    name: str
    stdout: ByteSink
    stderr: ByteSink
    parent: CaptureScope | None = None
    failure: BaseException | None = None
    active: bool = True
    children: list[Script] = field(default_factory=list)

    def enter(self) -> contextvars.Token[CaptureScope | None]:
        """Make this the current scope for the running task."""
        return _current_scope.set(self)

    def report_unhandled(self, error: BaseException, origin: str) -> None:
        """Record a child's unhandled failure.

        A finished scope hands the failure to its parent instead.
        """
        if not self.active:
            report_unhandled(error, self.parent, origin)
            return
        if self.failure is None:
            self.failure = error
        logger.debug(f"Capture {self.name!r} received unhandled failure from {origin!r}: {error}")

    def adopt(self, child: Script) -> None:
        if self.active:
            self.children.append(child)

    async def settle(self) -> None:
        """Wait for children still forwarding output into this scope.

        Their output and unhandled failures land here, not in the parent.
        Children created while waiting are waited for too.
        """
        while self.children:
            child = self.children.pop(0)
            await child._settle()

    def close(self) -> None:
        self.active = False
        self.children.clear()


def current_scope() -> CaptureScope | None:
    """Return the capture enclosing the running code, if any."""
    return _current_scope.get()


def output_sinks(scope: CaptureScope | None) -> tuple[ByteSink, ByteSink]:
    """Return the (stdout, stderr) sinks default forwarding writes to."""
    if scope is None:
        return HOST_STDOUT, HOST_STDERR
    return scope.stdout, scope.stderr


def report_unhandled(
    error: BaseException, scope: CaptureScope | None, origin: str
) -> None:
    """Surface a failure nobody handled.

    Inside a capture the capture fails; at top level the failure is logged
    and handed to the event loop's exception handler.
    """
    if scope is not None:
        scope.report_unhandled(error, origin)
        return

    logger.error(f"Unhandled failure in script {origin!r}: {error}")
    loop = asyncio.get_running_loop()
    loop.call_exception_handler(
        {
            "message": f"Unhandled failure in script {origin!r}",
            "exception": error,
        }
    )
