# shipyard/models/events.py
"""Event types and the event record written to the shared append-only log."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class EventType(str, Enum):
    PIPELINE_STARTED = "pipeline.started"
    PIPELINE_RESUMED = "pipeline.resumed"
    PIPELINE_INTERRUPTED = "pipeline.interrupted"
    PIPELINE_PAUSED = "pipeline.paused"
    PIPELINE_APPROVED = "pipeline.approved"
    PIPELINE_COMPLETED = "pipeline.completed"
    PIPELINE_FAILED = "pipeline.failed"
    PIPELINE_ABORTED = "pipeline.aborted"
    PIPELINE_COST = "pipeline.cost"
    STAGE_STARTED = "stage.started"
    STAGE_COMPLETED = "stage.completed"
    STAGE_FAILED = "stage.failed"
    STAGE_RETRY = "stage.retry"
    SELFHEAL_ATTEMPT = "selfheal.attempt"
    SELFHEAL_STUCK = "selfheal.stuck"
    BUILD_ITERATION = "build.iteration"
    BUILD_EXTENDED = "build.extended"
    WORKTREE_CREATED = "worktree.created"
    WORKTREE_CLEANED = "worktree.cleaned"
    WORKTREE_CLEANUP_FAILED = "worktree.cleanup_failed"
    QUEUE_ENQUEUED = "queue.enqueued"
    JOB_SPAWNED = "job.spawned"
    JOB_SPAWN_FAILED = "job.spawn_failed"
    JOB_KILLED = "job.killed"
    JOB_REAPED = "job.reaped"
    JOB_REQUEUED = "job.requeued"
    SCALE_ADJUSTED = "scale.adjusted"
    BREAKER_OPENED = "breaker.opened"
    BREAKER_HALF_OPEN = "breaker.half_open"
    BREAKER_CLOSED = "breaker.closed"
    DAEMON_STARTED = "daemon.started"
    DAEMON_STOPPED = "daemon.stopped"


class Event(BaseModel):
    """
    One line of the event log.

    Only ts and type are required; producers add whatever fields they need
    and readers keep them (extra="allow").
    """

    model_config = ConfigDict(extra="allow")

    ts: str
    type: str
    run_id: str | None = None
    issue: int | None = None
    stage: str | None = None
    attempt: int | None = None
    duration_s: float | None = None
    cost_usd: float | None = None
