"""Deferred exit status with "observed" tracking.

An ExitSignal is resolved exactly once. Reading the raw status through any
accessor that exposes it marks the signal observed; an observed failure is
the caller's responsibility and no longer turns into an exception.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TypeVar

from ..errors import ScriptException

__all__ = ["ExitSignal"]

T = TypeVar("T")


class ExitSignal:
    """Exit code of a Script, resolved once.

    Attributes:
        observed: Whether the raw status was read by the caller
    """

    def __init__(self) -> None:
        loop = asyncio.get_running_loop()
        self._future: asyncio.Future[int] = loop.create_future()
        self._error: BaseException | None = None
        self.observed = False

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, code: int, error: BaseException | None = None) -> None:
        """Resolve the exit code.

        Args:
            code: Exit code (negative for signal termination)
            error: Exception to report instead of ScriptException on failure

        Raises:
            RuntimeError: If the signal was already resolved
        """
        if self._future.done():
            raise RuntimeError(
                f"Exit status already resolved to {self._future.result()}, got {code}"
            )
        self._error = error
        self._future.set_result(code)

    def peek(self) -> int | None:
        """Return the exit code without suspending, or None while running."""
        if not self._future.done():
            return None
        return self._future.result()

    async def wait(self) -> int:
        """Wait for the exit code without marking it observed."""
        return await asyncio.shield(self._future)

    def mark_observed(self) -> None:
        self.observed = True

    def outcome(self, name: str) -> BaseException | None:
        """Return the exception completion fails with, or None on success.

        Only valid once resolved. Computed from the raw code and the
        observed flag at the time of the call.
        """
        code = self._future.result()
        if code == 0 or self.observed:
            return None
        if self._error is not None:
            return self._error
        return ScriptException(name, code)

    def derive(self, transform: Callable[[int], T]) -> asyncio.Future[T]:
        """Create a fresh future resolved with ``transform(code)``.

        Each accessor gets its own future, so cancelling one awaiter never
        cancels the signal itself.
        """
        derived: asyncio.Future[T] = self._future.get_loop().create_future()

        def _copy(source: asyncio.Future[int]) -> None:
            if derived.done():
                return
            try:
                derived.set_result(transform(source.result()))
            except Exception as e:
                derived.set_exception(e)

        if self._future.done():
            _copy(self._future)
        else:
            self._future.add_done_callback(_copy)
        return derived

    def add_done_callback(self, callback: Callable[[int], None]) -> None:
        """Call ``callback(code)`` once resolved."""
        self._future.add_done_callback(lambda future: callback(future.result()))

    def __repr__(self) -> str:
        code = self.peek()
        status = "running" if code is None else f"exited({code})"
        return f"ExitSignal({status}, observed={self.observed})"
