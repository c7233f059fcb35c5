"""Runtime module for streams, forwarding, exit tracking and process management.

These are the building blocks the public Script types are made of.
"""

from __future__ import annotations

from .exit_signal import ExitSignal
from .forwarding import StreamPolicy
from .process_runner import DEFAULT_SIGNAL, ProcessRunner, ProcessSpec
from .scope import CaptureScope, current_scope
from .streams import ByteChannel, ByteSink, ByteStream

__all__ = [
    "ByteChannel",
    "ByteSink",
    "ByteStream",
    "CaptureScope",
    "DEFAULT_SIGNAL",
    "ExitSignal",
    "ProcessRunner",
    "ProcessSpec",
    "StreamPolicy",
    "current_scope",
]
