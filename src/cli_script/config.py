"""cli-script environment configuration.

Environment variables:
    CLI_SCRIPT_PIPE_FAILURE: what a pipeline does when a non-terminal stage fails
        - warn = log a warning and emit BrokenPipeWarning (default)
        - ignore = only log at debug level
        - fail = pipefail; the pipeline exits with the right-most failing code

    CLI_SCRIPT_ISOLATE: start child processes in their own session/process group
        - true/1/yes = isolate; signals go to the whole group
        - false/0/no = share the parent's group (default)

    CLI_SCRIPT_CHUNK_SIZE: read size for process stdout/stderr pipes
        - default 4096, clamped to 1..1048576

    CLI_SCRIPT_LOG_DEBUG: debug logging for configure_logging()
        - true/1/yes = debug logs go to a temp file
        - false/0/no = INFO logs go to stderr (default)
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = [
    "Config",
    "PipeFailurePolicy",
    "configure_logging",
    "get_config",
    "load_config",
    "reload_config",
]

DEFAULT_CHUNK_SIZE = 4096
MAX_CHUNK_SIZE = 1024 * 1024


class PipeFailurePolicy(Enum):
    """How a pipeline treats a failing non-terminal stage.

    - WARN: log and emit BrokenPipeWarning, keep the last stage's status
    - IGNORE: keep the last stage's status silently
    - FAIL: report the right-most non-zero stage status (shell pipefail)
    """

    WARN = "warn"
    IGNORE = "ignore"
    FAIL = "fail"

    @classmethod
    def from_string(cls, value: str) -> "PipeFailurePolicy":
        """Parse a policy name, falling back to WARN for unknown values."""
        value = value.lower().strip()
        for policy in cls:
            if policy.value == value:
                return policy
        return cls.WARN


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_chunk_size(value: str | None) -> int:
    """Parse the pipe read size."""
    if not value:
        return DEFAULT_CHUNK_SIZE
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_CHUNK_SIZE
    return max(1, min(size, MAX_CHUNK_SIZE))


@dataclass
class Config:
    """cli-script configuration.

    Attributes:
        pipe_failure: Policy for failing non-terminal pipeline stages
        isolate: Start children in a new session/process group
        chunk_size: Read size for process output pipes
        log_debug: Send debug logs to a temp file
        log_file: Debug log path (set when log_debug is true)
    """

    pipe_failure: PipeFailurePolicy = PipeFailurePolicy.WARN
    isolate: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(pipe_failure={self.pipe_failure.value}, "
            f"isolate={self.isolate}, "
            f"chunk_size={self.chunk_size}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log path under the system temp dir."""
    log_dir = Path(tempfile.gettempdir()) / "cli-script"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"cli_script_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("CLI_SCRIPT_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    pipe_failure = os.environ.get("CLI_SCRIPT_PIPE_FAILURE")

    return Config(
        pipe_failure=(
            PipeFailurePolicy.from_string(pipe_failure)
            if pipe_failure
            else PipeFailurePolicy.WARN
        ),
        isolate=_parse_bool(os.environ.get("CLI_SCRIPT_ISOLATE"), default=False),
        chunk_size=_parse_chunk_size(os.environ.get("CLI_SCRIPT_CHUNK_SIZE")),
        log_debug=log_debug,
        log_file=log_file,
    )


# Global instance, loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config


def configure_logging(config: Config | None = None) -> logging.Handler:
    """Install a log handler for the ``cli_script`` namespace.

    Applications call this once at startup. Debug mode writes everything to
    ``config.log_file``; otherwise INFO and above go to stderr.

    Returns:
        The installed handler
    """
    config = config or get_config()

    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
            )
        )
        level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        level = logging.INFO

    package_logger = logging.getLogger("cli_script")
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    return handler
