# shipyard/models/jobs.py
"""
Scheduler-side models: tickets, queue items and live jobs.

Ticket is what a tracker hands back. QueueItem and Job are persisted in the
scheduler state document and therefore pydantic models, validated on read.
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from shipyard.timeutil import utc_now


@dataclass
class Ticket:
    """An external unit of work as reported by an issue tracker."""

    number: int
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    blocked_by: list[int] = field(default_factory=list)
    blocks: list[int] = field(default_factory=list)
    url: str | None = None
    state: str = "open"


class QueueItem(BaseModel):
    """A ticket waiting for admission."""

    model_config = ConfigDict(extra="ignore")

    issue: int
    title: str = ""
    score: int = 0
    created_at: datetime
    enqueued_at: datetime = Field(default_factory=utc_now)
    attempts: int = 0
    labels: list[str] = Field(default_factory=list)


class Job(BaseModel):
    """The scheduler's live handle on a spawned run process."""

    model_config = ConfigDict(extra="ignore")

    job_id: str
    issue: int
    title: str = ""
    pid: int
    workdir: str
    state_path: str
    log_path: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    last_heartbeat: datetime | None = None
    stage: str | None = None
    slot: int = 0
    attempts: int = 0
    template: str = "autonomous"
    created_at: datetime | None = None
    score: int = 0


class CompletedJob(BaseModel):
    """Outcome summary kept after a job is reaped."""

    model_config = ConfigDict(extra="ignore")

    issue: int
    job_id: str
    result: str
    failure_class: str | None = None
    duration_s: float = 0.0
    finished_at: datetime = Field(default_factory=utc_now)


def generate_job_id() -> str:
    """Generate a unique 12-character job ID."""
    return uuid4().hex[:12]
