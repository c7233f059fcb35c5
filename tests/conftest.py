"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path (development checkouts)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cli_script import Script, reload_config  # noqa: E402

# Child program driven by the process tests
CHILD_PROGRAM = Path(__file__).parent / "fixtures" / "signal_child.py"


def child_argv(*args: str) -> list[str]:
    """Command line running the test child program with ``args``."""
    return [sys.executable, str(CHILD_PROGRAM), *args]


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch):
    """Run every test against default configuration."""
    for name in (
        "CLI_SCRIPT_PIPE_FAILURE",
        "CLI_SCRIPT_ISOLATE",
        "CLI_SCRIPT_CHUNK_SIZE",
        "CLI_SCRIPT_LOG_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    reload_config()
    yield
    reload_config()


@pytest.fixture
def child():
    """Start the test child program as a Script.

    Must be called from a running event loop (inside an async test).
    """

    def _start(*args: str, **kwargs):
        argv = child_argv(*args)
        return Script.start(argv[0], argv[1:], **kwargs)

    return _start
