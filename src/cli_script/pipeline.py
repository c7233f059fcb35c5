"""Pipelines: Scripts chained stdout -> stdin.

``a | b | c`` wires each stage's stdout into the next stage's stdin and
exposes the chain as one Script: stdin of the first stage, stdout of the
last, the merged stderr of all stages, and the last stage's exit code.

A failing non-terminal stage does not fail the pipeline by default; what
happens is governed by PipeFailurePolicy (CLI_SCRIPT_PIPE_FAILURE).
"""

from __future__ import annotations

import asyncio
import logging
import warnings
from collections.abc import Sequence

from .config import PipeFailurePolicy, get_config
from .errors import BrokenPipeWarning
from .runtime.process_runner import DEFAULT_SIGNAL
from .runtime.streams import ByteChannel, ByteStream, pump
from .script import Script

__all__ = ["Pipeline"]

logger = logging.getLogger(__name__)


class Pipeline(Script):
    """A Script composed of two or more stages.

    Attributes:
        stages: Member scripts in pipe order
        failure_policy: Treatment of failing non-terminal stages
        stage_exit_codes: Exit codes of all stages once the pipeline exited

    Example:
        pipeline = Pipeline([Script.start("cat", ["app.log"]), Script.start("grep", ["ERROR"])])
        errors = await pipeline.output()
    """

    def __init__(
        self,
        scripts: Sequence[Script],
        *,
        name: str | None = None,
        failure_policy: PipeFailurePolicy | None = None,
    ) -> None:
        stages = list(scripts)
        if len(stages) < 2:
            raise ValueError(f"A pipeline needs at least two scripts, got {len(stages)}")

        loop = asyncio.get_running_loop()
        name = name or " | ".join(stage.name for stage in stages)
        self.stages = stages
        self.failure_policy = failure_policy or get_config().pipe_failure
        self.stage_exit_codes: list[int] | None = None

        # Stage failures are ours to handle
        for stage in stages:
            stage._supervised = True

        self._connections = [
            loop.create_task(pump(upstream.stdout.claim(), downstream.stdin, close_sink=True))
            for upstream, downstream in zip(stages, stages[1:])
        ]

        self._stderr_channel = ByteChannel(f"{name} stderr")
        self._stderr_copies = [
            loop.create_task(pump(stage.stderr.claim(), self._stderr_channel.sink))
            for stage in stages
            if stage.stderr.is_pending
        ]

        # stdout is the last stage's stream; that stage forwards it itself
        super().__init__(
            name,
            stdin=stages[0].stdin,
            stdout=stages[-1].stdout,
            stderr=ByteStream(self._stderr_channel.chunks(), name=f"{name} stderr"),
            forward=("stderr",),
        )
        self._start(self._run())

    def __or__(self, other: object) -> Pipeline:
        if not isinstance(other, Script):
            return NotImplemented
        return Pipeline([self, other], failure_policy=self.failure_policy)

    async def signal(self, sig: int = DEFAULT_SIGNAL) -> bool:
        """Deliver ``sig`` to every stage still running.

        Returns:
            True if at least one stage accepted it
        """
        running = [stage for stage in self.stages if not stage.exited]
        if not running:
            return False
        accepted = await asyncio.gather(*(stage.signal(sig) for stage in running))
        return any(accepted)

    async def _run(self) -> int:
        codes = [await stage._exit.wait() for stage in self.stages]

        results = await asyncio.gather(
            *self._connections, *self._stderr_copies, return_exceptions=True
        )
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Pipe in {self.name!r} failed: {result}")
        self._stderr_channel.sink.close()

        self.stage_exit_codes = codes
        return self._resolve_code(codes)

    def _resolve_code(self, codes: list[int]) -> int:
        for stage, code in zip(self.stages[:-1], codes[:-1]):
            if code == 0:
                continue
            message = f'Pipeline stage "{stage.name}" exited with code {code}'
            if self.failure_policy is PipeFailurePolicy.WARN:
                logger.warning(message)
                warnings.warn(message, BrokenPipeWarning)
            else:
                logger.debug(message)

        if self.failure_policy is PipeFailurePolicy.FAIL:
            failed = [code for code in codes if code != 0]
            return failed[-1] if failed else 0
        return codes[-1]
