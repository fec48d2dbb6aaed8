# shipyard/models/runs.py
"""
Run state models.

PipelineRun is the machine header of a run's state document. It is owned by
exactly one engine process at a time (see storage.atomic.StateLock) and is
validated on every read.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from shipyard.errors import InvalidTransitionError
from shipyard.models.templates import PipelineTemplate, StageSpec
from shipyard.timeutil import utc_now


class RunStatus(str, Enum):
    """Run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED_FOR_GATE = "paused_for_gate"
    INTERRUPTED = "interrupted"
    COMPLETE = "complete"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETE, RunStatus.ABORTED, RunStatus.FAILED})

# Monotonic apart from the two re-entry edges into RUNNING
# (approval of a paused gate, resume of an interrupted run).
ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.ABORTED, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.PAUSED_FOR_GATE,
            RunStatus.INTERRUPTED,
            RunStatus.COMPLETE,
            RunStatus.FAILED,
            RunStatus.ABORTED,
        }
    ),
    RunStatus.PAUSED_FOR_GATE: frozenset(
        {RunStatus.RUNNING, RunStatus.ABORTED, RunStatus.FAILED}
    ),
    RunStatus.INTERRUPTED: frozenset({RunStatus.RUNNING, RunStatus.ABORTED, RunStatus.FAILED}),
    RunStatus.COMPLETE: frozenset(),
    RunStatus.ABORTED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class StageStatus(str, Enum):
    """Per-stage status in the completion map and in StageRecords."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageRecord(BaseModel):
    """
    One attempt at one stage.

    Records are append-only: a retried build produces a new record with the
    next attempt number, so remediation history stays auditable.
    """

    model_config = ConfigDict(extra="ignore")

    stage: str
    attempt: int = 1
    status: StageStatus = StageStatus.RUNNING
    started_at: datetime
    ended_at: datetime | None = None
    duration_s: float | None = None
    artifacts: list[str] = Field(default_factory=list)
    error: str | None = None
    cost_usd: float = 0.0


def completion_from_records(records: list[StageRecord]) -> dict[str, StageStatus]:
    """Latest status per stage, in first-seen order."""
    completion: dict[str, StageStatus] = {}
    for record in records:
        completion[record.stage] = record.status
    return completion


def generate_run_id() -> str:
    """Generate a unique 12-character run ID."""
    return uuid4().hex[:12]


class PipelineRun(BaseModel):
    """Persisted state of one run (the state document's machine header)."""

    model_config = ConfigDict(extra="ignore")

    run_id: str = Field(default_factory=generate_run_id)
    goal: str = ""
    issue: int | None = None
    task_type: str | None = None
    template: PipelineTemplate
    status: RunStatus = RunStatus.PENDING
    current_stage: str | None = None
    stages: dict[str, StageStatus] = Field(default_factory=dict)
    records: list[StageRecord] = Field(default_factory=list)
    pending_gate: str | None = None
    approved_gates: list[str] = Field(default_factory=list)

    branch: str | None = None
    base_branch: str = "main"
    worktree: str | None = None
    workdir: str | None = None
    model: str | None = None
    test_cmd: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    self_heal_iteration: int = 0
    self_heal_limit: int = 3
    extension_count: int = 0
    cost_usd: float = 0.0

    ignore_budget: bool = False
    skip_gates: bool = False
    error: str | None = None
    pr_url: str | None = None
    job_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def init_stage_map(self) -> None:
        """Populate the completion map from the template (disabled stages are skipped)."""
        self.stages = {
            spec.id: StageStatus.PENDING if spec.enabled else StageStatus.SKIPPED
            for spec in self.template.stages
        }

    def transition(self, target: RunStatus) -> None:
        """
        Move to a new status.

        Raises:
            InvalidTransitionError: If the state machine does not allow it
        """
        if self.status == target:
            return
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        now = utc_now()
        self.updated_at = now
        if target == RunStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if target in TERMINAL_STATUSES:
            self.completed_at = now

    def enabled_stages(self) -> list[StageSpec]:
        return self.template.enabled_stages()

    def next_stage(self) -> StageSpec | None:
        """First enabled stage not yet complete, in template order."""
        for spec in self.enabled_stages():
            if self.stages.get(spec.id) != StageStatus.COMPLETE:
                return spec
        return None

    def attempts(self, stage_id: str) -> int:
        return sum(1 for r in self.records if r.stage == stage_id)

    def begin_stage(self, stage_id: str) -> StageRecord:
        """Append a new RUNNING record for the next attempt at stage_id."""
        record = StageRecord(
            stage=stage_id,
            attempt=self.attempts(stage_id) + 1,
            status=StageStatus.RUNNING,
            started_at=utc_now(),
        )
        self.records.append(record)
        self.current_stage = stage_id
        self.stages[stage_id] = StageStatus.RUNNING
        self.updated_at = record.started_at
        return record

    def finish_stage(
        self,
        record: StageRecord,
        status: StageStatus,
        artifacts: list[str] | None = None,
        error: str | None = None,
        cost_usd: float = 0.0,
    ) -> StageRecord:
        """Close a record opened by begin_stage and mirror it into the completion map."""
        record.status = status
        record.ended_at = utc_now()
        record.duration_s = round((record.ended_at - record.started_at).total_seconds(), 3)
        record.artifacts = list(artifacts or [])
        record.error = error
        record.cost_usd = cost_usd
        self.stages[record.stage] = status
        self.cost_usd = round(self.cost_usd + cost_usd, 6)
        self.updated_at = record.ended_at
        return record

    def completion_map(self) -> dict[str, StageStatus]:
        return completion_from_records(self.records)
