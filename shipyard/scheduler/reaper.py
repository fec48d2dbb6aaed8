# shipyard/scheduler/reaper.py
"""
Reaping finished and stuck jobs.

Liveness comes from two places: the process table (psutil, a zombie counts
as dead) and the job's heartbeat file. A live process whose heartbeat has
not advanced within the stage's adaptive timeout is killed and its run is
force-marked failed. A process that has exited is reconciled against its
state document, which is the run's own account of how it ended.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from shipyard.config.schema import DaemonConfig
from shipyard.errors import LockError, StateDocumentError
from shipyard.models.events import EventType
from shipyard.models.jobs import CompletedJob, Job, QueueItem
from shipyard.models.runs import PipelineRun, RunStatus
from shipyard.procutil import terminate_process_tree
from shipyard.scheduler.failures import FailureClass, classify_failure, classify_log, retry_budget
from shipyard.scheduler.spawner import ProcessSpawner
from shipyard.scheduler.state import SchedulerState
from shipyard.scheduler.timeouts import TimeoutPolicy
from shipyard.storage.heartbeat import HeartbeatStore
from shipyard.storage.state_document import document_for

logger = logging.getLogger(__name__)


class Reaper:
    def __init__(
        self,
        spawner: ProcessSpawner,
        heartbeats: HeartbeatStore,
        policy: TimeoutPolicy,
        config: DaemonConfig,
        emit: Callable[..., None] | None = None,
    ) -> None:
        self.spawner = spawner
        self.heartbeats = heartbeats
        self.policy = policy
        self.config = config
        self._emit = emit or (lambda *a, **k: None)

    def reap(self, state: SchedulerState, now: datetime) -> list[CompletedJob]:
        """Check every active job once. Returns the jobs finalized this pass."""
        finished = []
        for job in list(state.active):
            self._refresh(job)
            if self.spawner.is_running(job):
                age = (now - (job.last_heartbeat or job.started_at)).total_seconds()
                timeout = self.policy.heartbeat_timeout(job.stage)
                if age <= timeout:
                    continue
                finished.append(self._kill_stalled(state, job, now, age, timeout))
            else:
                finished.append(self._finalize(state, job, now))
        return finished

    def _refresh(self, job: Job) -> None:
        hb = self.heartbeats.read(job.job_id)
        if hb is None:
            return
        if job.last_heartbeat is None or hb.updated_at > job.last_heartbeat:
            job.last_heartbeat = hb.updated_at
        if hb.stage:
            job.stage = hb.stage

    def _kill_stalled(
        self, state: SchedulerState, job: Job, now: datetime, age: float, timeout: float
    ) -> CompletedJob:
        reason = (
            f"Heartbeat stale for {age:.0f}s (timeout {timeout:.0f}s) in stage {job.stage or 'unknown'}"
        )
        logger.warning(f"Killing #{job.issue} (PID {job.pid}): {reason}")
        stopped = terminate_process_tree(job.pid, grace_s=self.config.kill_grace_s)
        if not stopped:
            logger.error(f"PID {job.pid} survived SIGKILL; marking its run failed regardless")
        self._emit(
            EventType.JOB_KILLED,
            issue=job.issue,
            job_id=job.job_id,
            pid=job.pid,
            stage=job.stage,
            heartbeat_age_s=round(age, 1),
            timeout_s=timeout,
        )
        return self._finalize(state, job, now, stalled_reason=reason)

    def _force_fail(self, job: Job, reason: str) -> PipelineRun | None:
        try:
            return document_for(Path(job.state_path)).force_fail(
                reason, lock_timeout=self.config.lock_timeout_s
            )
        except (LockError, StateDocumentError, OSError) as e:
            logger.error(f"Could not mark run for #{job.issue} failed: {e}")
            return None

    def _read_run(self, job: Job) -> PipelineRun | None:
        doc = document_for(Path(job.state_path))
        if not doc.exists():
            return None
        try:
            return doc.load()
        except StateDocumentError as e:
            logger.warning(f"Unreadable state for #{job.issue}: {e}")
            return None

    def _finalize(
        self,
        state: SchedulerState,
        job: Job,
        now: datetime,
        stalled_reason: str | None = None,
    ) -> CompletedJob:
        exit_code = self.spawner.exit_code(job)
        run = self._read_run(job)

        if stalled_reason:
            run = self._force_fail(job, stalled_reason) or run
            success = False
        elif run is not None:
            if not run.is_terminal:
                run = self._force_fail(
                    job, f"Process exited (code {exit_code}) with run still {run.status.value}"
                ) or run
            success = run.status == RunStatus.COMPLETE
        else:
            success = exit_code == 0

        state.active = [j for j in state.active if j.job_id != job.job_id]
        self.heartbeats.clear(job.job_id)
        self.spawner.forget(job)
        duration = (now - job.started_at).total_seconds()

        if success:
            self.spawner.cleanup(job)
            state.retry_counts.pop(job.issue, None)
            entry = CompletedJob(
                issue=job.issue, job_id=job.job_id, result="success", duration_s=duration, finished_at=now
            )
            logger.info(f"#{job.issue} completed in {duration:.0f}s")
        else:
            failure_class = self._classify(job, run, stalled_reason)
            entry = self._handle_failure(state, job, failure_class, duration, now)

        state.add_completed(entry)
        self._emit(
            EventType.JOB_REAPED,
            issue=job.issue,
            job_id=job.job_id,
            result=entry.result,
            failure_class=entry.failure_class,
            exit_code=exit_code,
            duration_s=round(duration, 3),
        )
        return entry

    def _classify(self, job: Job, run: PipelineRun | None, stalled_reason: str | None) -> FailureClass:
        if stalled_reason:
            return FailureClass.STALLED
        if run is not None and run.error:
            failure_class = classify_failure(run.error)
            if failure_class != FailureClass.UNKNOWN:
                return failure_class
        return classify_log(Path(job.log_path) if job.log_path else None)

    def _handle_failure(
        self,
        state: SchedulerState,
        job: Job,
        failure_class: FailureClass,
        duration: float,
        now: datetime,
    ) -> CompletedJob:
        retries = state.retry_counts.get(job.issue, 0)
        budget = retry_budget(failure_class, self.config)
        if retries < budget:
            state.retry_counts[job.issue] = retries + 1
            item = QueueItem(
                issue=job.issue,
                title=job.title,
                score=job.score,
                created_at=job.created_at or job.started_at,
                attempts=job.attempts + 1,
            )
            if not any(q.issue == job.issue for q in state.queue):
                state.queue.append(item)
            logger.warning(
                f"#{job.issue} failed ({failure_class.value}); requeued, retry {retries + 1}/{budget}"
            )
            self._emit(
                EventType.JOB_REQUEUED,
                issue=job.issue,
                job_id=job.job_id,
                failure_class=failure_class.value,
                retry=retries + 1,
                budget=budget,
            )
            result = "requeued"
        else:
            logger.error(f"#{job.issue} failed ({failure_class.value}); retry budget exhausted")
            result = "failed"
        return CompletedJob(
            issue=job.issue,
            job_id=job.job_id,
            result=result,
            failure_class=failure_class.value,
            duration_s=duration,
            finished_at=now,
        )
