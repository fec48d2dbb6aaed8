# shipyard/scheduler/lifecycle.py
"""
Daemon lifecycle management.

Coordinates startup (daemon lock + crash recovery + signals) and shutdown
(stop child runs, requeue their tickets, release the lock). Also the
out-of-process status and stop commands.
"""

import logging
import os
import signal
import time
from typing import Any

from shipyard.errors import LockHeldError
from shipyard.models.events import EventType
from shipyard.models.jobs import QueueItem
from shipyard.procutil import pid_alive, terminate_process_tree
from shipyard.scheduler.daemon import Scheduler
from shipyard.scheduler.signals import setup_signal_handlers
from shipyard.scheduler.state import SchedulerState, SchedulerStore
from shipyard.storage.atomic import StateLock, atomic_write_text
from shipyard.storage.paths import HomePaths
from shipyard.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)


class DaemonLifecycle:
    """
    Daemon lifecycle coordinator.

    Manages:
        - The single-instance daemon lock (records the daemon's pid)
        - Crash recovery: jobs left by a previous daemon are reaped at once
        - Signal handler registration
        - Graceful shutdown
    """

    def __init__(self, scheduler: Scheduler, install_signals: bool = True) -> None:
        self.scheduler = scheduler
        self.home = scheduler.home
        self.lock = StateLock(self.home.daemon_lock, purpose="daemon")
        self._install_signals = install_signals

    def startup(self) -> SchedulerState:
        """
        Start the daemon.

        Steps:
            1. Take the daemon lock (a stale one from a crashed daemon is reclaimed)
            2. Reap jobs recorded by a previous session
            3. Register signal handlers

        Raises:
            LockHeldError: Another daemon is running
        """
        logger.info("Starting scheduler daemon...")
        self.lock.acquire()
        try:
            self.home.shutdown_flag.unlink()
        except FileNotFoundError:
            pass

        now = utc_now()
        with self.scheduler.store.update() as state:
            leftover = list(state.active)
            if leftover:
                logger.warning(f"Found {len(leftover)} job(s) from previous session")
                for job in leftover:
                    logger.warning(f"  - #{job.issue}: job {job.job_id} (PID {job.pid})")
            self.scheduler.reaper.reap(state, now)
            state.pid = os.getpid()
            state.started_at = now

        if self._install_signals:
            setup_signal_handlers(self.scheduler)

        self.scheduler.events.emit(EventType.DAEMON_STARTED, pid=os.getpid())
        logger.info("Scheduler daemon started")
        return state

    def shutdown(self) -> None:
        """
        Stop the daemon gracefully.

        Child runs are stopped (SIGTERM, then SIGKILL after the grace window)
        and their tickets requeued; each run resumes from its checkpoint
        when it is next admitted.
        """
        logger.info("Shutting down scheduler daemon...")
        grace = self.scheduler.daemon.kill_grace_s
        try:
            with self.scheduler.store.update() as state:
                for job in list(state.active):
                    if self.scheduler.spawner.is_running(job):
                        logger.info(f"Stopping #{job.issue} (PID {job.pid})")
                        terminate_process_tree(job.pid, grace_s=grace)
                    self.scheduler.spawner.forget(job)
                    if not any(q.issue == job.issue for q in state.queue):
                        state.queue.append(
                            QueueItem(
                                issue=job.issue,
                                title=job.title,
                                score=job.score,
                                created_at=job.created_at or job.started_at,
                                attempts=job.attempts,
                            )
                        )
                state.active = []
                state.pid = None
        finally:
            self.scheduler.events.emit(EventType.DAEMON_STOPPED, pid=os.getpid())
            self.lock.release()
            logger.info("Scheduler daemon shutdown complete")

    def run(self) -> None:
        """startup(), the scheduler loop, shutdown()."""
        self.startup()
        try:
            self.scheduler.run_forever()
        finally:
            self.shutdown()

    def run_once(self) -> SchedulerState:
        """
        One cycle under the daemon lock.

        Spawned runs keep going after this returns; the next cycle (or the
        next daemon) reaps them.
        """
        self.startup()
        try:
            return self.scheduler.run_cycle()
        finally:
            self.lock.release()


def daemon_status(home: HomePaths) -> dict[str, Any]:
    """Summary for `daemon status`; readable while the daemon runs."""
    lock = StateLock(home.daemon_lock, purpose="daemon")
    holder = lock.holder()
    running = lock.is_held_by_live_process()
    store = SchedulerStore(home.daemon_state_file, home.daemon_state_lock)
    state = store.load()
    return {
        "running": running,
        "pid": holder.get("pid") if holder and running else None,
        "started_at": to_iso(state.started_at) if state.started_at else None,
        "last_poll": to_iso(state.last_poll) if state.last_poll else None,
        "ceiling": state.ceiling,
        "resources": state.resources,
        "breaker": state.breaker.state.value,
        "queue": [q.model_dump(mode="json") for q in state.queue],
        "active": [j.model_dump(mode="json") for j in state.active],
        "completed": [c.model_dump(mode="json") for c in state.completed[-10:]],
    }


def stop_daemon(home: HomePaths, timeout: float = 30.0) -> bool:
    """
    Ask a running daemon to stop and wait for it.

    Leaves the shutdown flag (noticed between cycles) and sends SIGTERM to
    the recorded holder.

    Returns:
        True if no daemon is running afterwards
    """
    lock = StateLock(home.daemon_lock, purpose="daemon")
    if not lock.is_held_by_live_process():
        logger.info("No daemon running")
        return True
    holder = lock.holder() or {}
    pid = holder.get("pid")

    atomic_write_text(home.shutdown_flag, to_iso(utc_now()) + "\n")
    if pid:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            raise LockHeldError(f"Cannot signal daemon PID {pid}: {e}", holder) from e

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid) or not lock.is_held_by_live_process():
            return True
        time.sleep(0.2)
    return False
