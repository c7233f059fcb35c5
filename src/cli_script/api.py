"""One-call helpers for running commands.

    await run("git fetch origin")
    branch = await output(["git", "rev-parse", "--abbrev-ref", "HEAD"])
    async for path in lines("git ls-files"):
        ...
    if await check("git diff --quiet"):
        ...

String commands are split with ``shlex.split``; no shell is involved.
"""

from __future__ import annotations

import shlex
from collections.abc import AsyncIterator, Sequence
from os import PathLike
from typing import Any, Union

from .script import ProcessScript, Script

__all__ = ["check", "lines", "output", "run"]

Command = Union[str, Sequence[Union[str, PathLike]]]


def _start(command: Command, kwargs: dict[str, Any]) -> ProcessScript:
    if isinstance(command, str):
        argv: list[Any] = shlex.split(command)
    else:
        argv = list(command)
    if not argv:
        raise ValueError("Empty command")
    return Script.start(argv[0], argv[1:], **kwargs)


async def run(command: Command, **kwargs: Any) -> None:
    """Run a command to completion.

    Output goes to the enclosing capture or the host process.

    Raises:
        SpawnError: If the executable cannot be started
        ScriptException: If the command exits unsuccessfully
    """
    await _start(command, kwargs).done


async def output(command: Command, **kwargs: Any) -> str:
    """Run a command and return its stdout, trailing newlines removed.

    Raises:
        SpawnError: If the executable cannot be started
        ScriptException: If the command exits unsuccessfully
    """
    return await _start(command, kwargs).output()


async def lines(command: Command, **kwargs: Any) -> AsyncIterator[str]:
    """Run a command and iterate its stdout line by line.

    Each call runs the command again.

    Raises:
        SpawnError: If the executable cannot be started
        ScriptException: After the last line, if the command failed
    """
    async for line in _start(command, kwargs).lines():
        yield line


async def check(command: Command, **kwargs: Any) -> bool:
    """Run a command and return whether it exited with code 0.

    Raises:
        SpawnError: If the executable cannot be located
    """
    return await _start(command, kwargs).success
