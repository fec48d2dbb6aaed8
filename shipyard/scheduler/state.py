# shipyard/scheduler/state.py
"""
Scheduler state document.

One JSON document holds the queue, the job table, the ceiling and the
breaker. It is owned by the scheduler loop and passed through it
explicitly; every mutation goes through SchedulerStore.update(), which
holds the single mutation lock and writes atomically.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shipyard.errors import StateDocumentError
from shipyard.models.jobs import CompletedJob, Job, QueueItem
from shipyard.scheduler.breaker import BreakerSnapshot
from shipyard.storage.atomic import StateLock, atomic_write_text

logger = logging.getLogger(__name__)

STATE_VERSION = 1
COMPLETED_HISTORY = 100


class SchedulerState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = STATE_VERSION
    pid: int | None = None
    started_at: datetime | None = None
    last_poll: datetime | None = None
    ceiling: int = 0
    resources: dict[str, int | None] = Field(default_factory=dict)
    queue: list[QueueItem] = Field(default_factory=list)
    active: list[Job] = Field(default_factory=list)
    completed: list[CompletedJob] = Field(default_factory=list)
    retry_counts: dict[int, int] = Field(default_factory=dict)
    breaker: BreakerSnapshot = Field(default_factory=BreakerSnapshot)
    last_spawn_at: datetime | None = None
    last_selected: int | None = None
    empty_cycles: int = 0

    def active_issues(self) -> set[int]:
        return {job.issue for job in self.active}

    def free_slot(self) -> int:
        used = {job.slot for job in self.active}
        slot = 0
        while slot in used:
            slot += 1
        return slot

    def add_completed(self, entry: CompletedJob) -> None:
        self.completed.append(entry)
        del self.completed[:-COMPLETED_HISTORY]


class SchedulerStore:
    """Load/save with the mutation lock."""

    def __init__(self, path: Path, lock_path: Path, lock_timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.lock = StateLock(lock_path, purpose="scheduler-state")
        self.lock_timeout = lock_timeout

    def load(self) -> SchedulerState:
        """
        Read the state; a missing file is a fresh state.

        Raises:
            StateDocumentError: The file exists but is malformed
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return SchedulerState()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StateDocumentError(f"{self.path} is not valid JSON: {e}") from e
        try:
            state = SchedulerState.model_validate(data)
        except ValidationError as e:
            raise StateDocumentError(f"Invalid scheduler state in {self.path}: {e}") from e
        if state.version != STATE_VERSION:
            raise StateDocumentError(f"Unsupported scheduler state version {state.version}")
        return state

    def save(self, state: SchedulerState) -> None:
        atomic_write_text(self.path, state.model_dump_json(indent=2) + "\n")

    @contextmanager
    def update(self) -> Iterator[SchedulerState]:
        """Lock, load, let the caller mutate, save. Nothing is saved if the body raises."""
        with self.lock.held(timeout=self.lock_timeout):
            state = self.load()
            yield state
            self.save(state)
