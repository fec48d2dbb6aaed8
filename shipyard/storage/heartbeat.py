# shipyard/storage/heartbeat.py
"""
Heartbeat files.

A scheduler-spawned run rewrites <home>/heartbeats/<job_id>.json every few
seconds from a background thread. The scheduler treats the file's
updated_at as the job's only liveness signal.
"""

import logging
import os
import threading
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shipyard.procutil import process_usage
from shipyard.storage.atomic import atomic_write_text
from shipyard.timeutil import utc_now

logger = logging.getLogger(__name__)


class Heartbeat(BaseModel):
    """One heartbeat snapshot."""

    model_config = ConfigDict(extra="ignore")

    job_id: str
    pid: int
    run_id: str | None = None
    issue: int | None = None
    stage: str | None = None
    iteration: int = 0
    activity: str = ""
    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    updated_at: datetime = Field(default_factory=utc_now)


class HeartbeatStore:
    """Directory of heartbeat files keyed by job id."""

    def __init__(self, directory: Path) -> None:
        self.dir = Path(directory)

    def path(self, job_id: str) -> Path:
        return self.dir / f"{job_id}.json"

    def write(self, heartbeat: Heartbeat) -> None:
        atomic_write_text(self.path(heartbeat.job_id), heartbeat.model_dump_json(indent=2))

    def read(self, job_id: str) -> Heartbeat | None:
        """Return the heartbeat, or None if it is missing or unreadable."""
        try:
            raw = self.path(job_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Heartbeat.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed heartbeat for job {job_id}: {e}")
            return None

    def list(self) -> list[Heartbeat]:
        if not self.dir.exists():
            return []
        beats = []
        for p in sorted(self.dir.glob("*.json")):
            hb = self.read(p.stem)
            if hb is not None:
                beats.append(hb)
        return beats

    def clear(self, job_id: str) -> None:
        try:
            self.path(job_id).unlink()
        except FileNotFoundError:
            pass

    def age_seconds(self, job_id: str, now: datetime | None = None) -> float | None:
        hb = self.read(job_id)
        if hb is None:
            return None
        return ((now or utc_now()) - hb.updated_at).total_seconds()


class HeartbeatWriter:
    """
    Background thread that keeps a job's heartbeat fresh.

    The engine calls update() on every stage and build iteration; the thread
    rewrites the file every interval with the latest values and this
    process's RSS and CPU.
    """

    def __init__(
        self,
        store: HeartbeatStore,
        job_id: str,
        interval_s: float = 30.0,
        run_id: str | None = None,
        issue: int | None = None,
    ) -> None:
        self.store = store
        self.interval_s = interval_s
        self._beat = Heartbeat(job_id=job_id, pid=os.getpid(), run_id=run_id, issue=issue)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def update(
        self,
        stage: str | None = None,
        iteration: int | None = None,
        activity: str | None = None,
        run_id: str | None = None,
    ) -> None:
        with self._lock:
            if stage is not None:
                self._beat.stage = stage
            if iteration is not None:
                self._beat.iteration = iteration
            if activity is not None:
                self._beat.activity = activity
            if run_id is not None:
                self._beat.run_id = run_id
        self.beat()

    def beat(self) -> None:
        with self._lock:
            memory_mb, cpu = process_usage(self._beat.pid)
            self._beat.memory_mb = memory_mb
            self._beat.cpu_percent = cpu
            self._beat.updated_at = utc_now()
            snapshot = self._beat.model_copy()
        try:
            self.store.write(snapshot)
        except OSError as e:
            logger.warning(f"Heartbeat write failed: {e}")

    def start(self) -> None:
        if self._thread is not None:
            return
        self.beat()
        self._thread = threading.Thread(
            target=self._loop, name=f"heartbeat-{self._beat.job_id}", daemon=True
        )
        self._thread.start()

    def stop(self, clear: bool = False) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        if clear:
            self.store.clear(self._beat.job_id)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.beat()
