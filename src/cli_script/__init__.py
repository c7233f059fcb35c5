"""cli-script - processes and in-process code behind one Script abstraction.

Environment variables:
    CLI_SCRIPT_PIPE_FAILURE: warn | ignore | fail (default warn)
    CLI_SCRIPT_ISOLATE: start children in their own process group (default false)
    CLI_SCRIPT_CHUNK_SIZE: pipe read size (default 4096)
    CLI_SCRIPT_LOG_DEBUG: debug logs to a temp file via configure_logging()

Usage:
    from cli_script import Script, output

    print(await output("git status --short"))
    await (Script.start("cat", ["app.log"]) | Script.start("grep", ["ERROR"]))
"""

__version__ = "0.1.0"

from .api import check, lines, output, run
from .buffered import BufferedScript
from .capture import CaptureIO, CaptureScript
from .config import (
    Config,
    PipeFailurePolicy,
    configure_logging,
    get_config,
    load_config,
    reload_config,
)
from .errors import (
    UNHANDLED_ERROR_EXIT_CODE,
    BrokenPipeWarning,
    ScriptError,
    ScriptException,
    SpawnError,
)
from .pipeline import Pipeline
from .runtime.process_runner import DEFAULT_SIGNAL
from .runtime.streams import ByteSink, ByteStream
from .script import ProcessScript, Script

__all__ = [
    "BrokenPipeWarning",
    "BufferedScript",
    "ByteSink",
    "ByteStream",
    "CaptureIO",
    "CaptureScript",
    "Config",
    "DEFAULT_SIGNAL",
    "PipeFailurePolicy",
    "Pipeline",
    "ProcessScript",
    "Script",
    "ScriptError",
    "ScriptException",
    "SpawnError",
    "UNHANDLED_ERROR_EXIT_CODE",
    "__version__",
    "check",
    "configure_logging",
    "get_config",
    "lines",
    "load_config",
    "output",
    "reload_config",
    "run",
]
