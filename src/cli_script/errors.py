"""Exceptions and warnings raised by cli-script.

- ScriptError: base class for everything below
- SpawnError: the executable could not be located or launched
- ScriptException: a Script failed and nobody took responsibility for its status
- BrokenPipeWarning: a non-terminal pipeline stage failed
"""

from __future__ import annotations

__all__ = [
    "BrokenPipeWarning",
    "ScriptError",
    "ScriptException",
    "SpawnError",
    "UNHANDLED_ERROR_EXIT_CODE",
]

# Exit code of a capture whose callback (or an unobserved child) failed.
# Outside the 0-255 range a real process can report.
UNHANDLED_ERROR_EXIT_CODE = 256

# Exit code used when the executable was found but could not be launched.
SPAWN_FAILURE_EXIT_CODE = 126


class ScriptError(Exception):
    """Base class for cli-script errors."""


class SpawnError(ScriptError):
    """The executable could not be located or launched.

    Attributes:
        executable: The executable as given by the caller
    """

    def __init__(self, executable: str, reason: str) -> None:
        super().__init__(f"Failed to start {executable!r}: {reason}")
        self.executable = executable
        self.reason = reason


class ScriptException(ScriptError):
    """A Script exited unsuccessfully and its status was never observed.

    Attributes:
        script_name: Name of the failing Script
        exit_code: Its exit code (negative for signal termination)
    """

    def __init__(self, script_name: str, exit_code: int) -> None:
        super().__init__(f'Script "{script_name}" exited with code {exit_code}')
        self.script_name = script_name
        self.exit_code = exit_code

    def __reduce__(self):
        return (type(self), (self.script_name, self.exit_code))


class BrokenPipeWarning(UserWarning):
    """A non-terminal pipeline stage exited unsuccessfully."""
