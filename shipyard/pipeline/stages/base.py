# shipyard/pipeline/stages/base.py
"""
Abstract base class for pipeline stages.

A stage does one unit of work for a run and reports a StageResult. Stages
never decide about retries, self-healing or aborting: that belongs to the
engine. Any exception a stage raises is converted into a failed result by
the StageRunner.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shipyard.capabilities import Capabilities
from shipyard.config.schema import ShipyardConfig
from shipyard.models.runs import PipelineRun, StageStatus
from shipyard.models.templates import StageConfig
from shipyard.procutil import decode_output
from shipyard.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    """
    Result of executing a pipeline stage.

    Attributes:
        status: COMPLETE or FAILED
        artifacts: Artifact names written by the stage
        error: Failure description, captured verbatim for the next retry
        output: Raw output (test log, agent text) used as self-heal feedback
        cost_usd: Agent spend attributed to the stage
    """

    status: StageStatus
    artifacts: list[str] = field(default_factory=list)
    error: str | None = None
    output: str = ""
    cost_usd: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == StageStatus.COMPLETE


def completed(artifacts: list[str] | None = None, output: str = "", cost_usd: float = 0.0) -> StageResult:
    return StageResult(StageStatus.COMPLETE, list(artifacts or []), None, output, cost_usd)


def failed(
    error: str, artifacts: list[str] | None = None, output: str = "", cost_usd: float = 0.0
) -> StageResult:
    return StageResult(StageStatus.FAILED, list(artifacts or []), error, output, cost_usd)


def _noop_report(**_: Any) -> None:
    return None


@dataclass
class RunContext:
    """
    Everything a stage can see.

    The engine owns the context for the whole run; stages may update the
    run's descriptive fields (goal, branch, test_cmd, pr_url) and the engine
    persists them after the stage returns.
    """

    run: PipelineRun
    project_dir: Path
    workdir: Path
    artifacts: ArtifactStore
    caps: Capabilities
    config: ShipyardConfig
    heal_feedback: str | None = None
    report: Callable[..., None] = _noop_report
    emit: Callable[..., None] = _noop_report
    sleep: Callable[[float], None] = lambda _: None

    def stage_config(self, stage_id: str) -> StageConfig:
        spec = self.run.template.stage(stage_id)
        return spec.config if spec is not None else StageConfig()

    def model_for(self, stage_id: str) -> str:
        return (
            self.stage_config(stage_id).model
            or self.run.model
            or self.run.template.model
            or self.config.pipeline.model
        )


def run_shell(command: str, cwd: Path, timeout_s: int | None = None) -> tuple[int, str]:
    """
    Run a shell command, returning (exit_code, combined stdout+stderr).

    A timeout returns exit code 124 with whatever output was produced.
    """
    logger.info(f"Running: {command}")
    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as e:
        partial = decode_output(e.stdout)
        return 124, f"{partial}\n[timed out after {timeout_s}s]\n"
    return proc.returncode, proc.stdout


class Stage(ABC):
    """
    A named unit of work within a run.

    Subclasses set `name` and may list `required_artifacts`; the runner fails
    a "complete" result whose required artifacts were not written.
    """

    name: str = ""
    required_artifacts: tuple[str, ...] = ()

    @abstractmethod
    def execute(self, ctx: RunContext) -> StageResult:
        """Do the stage's work."""
