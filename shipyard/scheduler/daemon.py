# shipyard/scheduler/daemon.py
"""
Scheduler loop.

Each cycle: measure resources and recompute the admission ceiling, poll the
tracker into the queue, admit while there is room, then reap. Admission
runs every cycle, so the queue drains even when nothing is active.

The scheduler never calls into a pipeline in-process. It spawns run
processes and learns how they went from heartbeat files, state documents
and exit codes.
"""

import logging
import time
import traceback
from collections.abc import Callable
from datetime import datetime

from shipyard.capabilities.protocols import CostReporter, IssueTracker
from shipyard.config.schema import ShipyardConfig
from shipyard.errors import CapabilityError, SpawnError
from shipyard.history import lower_median
from shipyard.models.events import EventType
from shipyard.models.jobs import Job, QueueItem, Ticket, generate_job_id
from shipyard.scheduler.breaker import CircuitBreaker
from shipyard.scheduler.queue import AdmissionQueue
from shipyard.scheduler.reaper import Reaper
from shipyard.scheduler.resources import ResourceMonitor, compute_ceiling
from shipyard.scheduler.scoring import triage_score
from shipyard.scheduler.spawner import ProcessSpawner
from shipyard.scheduler.state import SchedulerState, SchedulerStore
from shipyard.scheduler.timeouts import TimeoutPolicy, poll_interval
from shipyard.storage.events import EventLog
from shipyard.storage.heartbeat import HeartbeatStore
from shipyard.storage.paths import HomePaths
from shipyard.timeutil import utc_now

logger = logging.getLogger(__name__)

FINISHED_RESULTS = ("success", "failed")


class Scheduler:
    """
    Admission and supervision of pipeline run processes.

    Features:
        - Ceiling = min(cpu, memory, budget, external cap, max_workers)
        - Priority scoring with oldest-first and rotation tiebreaks
        - Spawn circuit breaker and single-slot stagger
        - Heartbeat reaping with adaptive timeouts
    """

    def __init__(
        self,
        config: ShipyardConfig,
        home: HomePaths,
        tracker: IssueTracker,
        cost: CostReporter,
        spawner: ProcessSpawner,
        monitor: ResourceMonitor | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        external_cap: int | None = None,
    ) -> None:
        self.config = config
        self.daemon = config.daemon
        self.home = home
        self.tracker = tracker
        self.cost = cost
        self.spawner = spawner
        self.monitor = monitor or ResourceMonitor()
        self.clock = clock
        self._sleep = sleep
        self.external_cap = external_cap

        self.store = SchedulerStore(
            home.daemon_state_file, home.daemon_state_lock, self.daemon.lock_timeout_s
        )
        self.events = EventLog(home.events_file)
        self.heartbeats = HeartbeatStore(home.heartbeats_dir)
        self.policy = TimeoutPolicy(self.daemon)
        self.reaper = Reaper(spawner, self.heartbeats, self.policy, self.daemon, emit=self._emit)
        self._stop_requested = False

    def _emit(self, event_type: EventType, **fields) -> None:
        self.events.emit(event_type, **fields)

    def request_stop(self) -> None:
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested or self.home.shutdown_flag.exists()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def run_cycle(self, now: datetime | None = None) -> SchedulerState:
        """Run one scheduling cycle and return the resulting state."""
        now = now or self.clock()
        history = self.events.read()
        self.policy.learn(history)

        self._update_ceiling(now)
        self._poll(now, history)
        self._admit(now)
        with self.store.update() as state:
            self.reaper.reap(state, now)
            if state.queue or state.active:
                state.empty_cycles = 0
            else:
                state.empty_cycles += 1
            return state

    def _remaining_budget(self) -> float | None:
        # Advisory: an unreachable reporter does not stop admission
        try:
            return self.cost.remaining_budget()
        except Exception as e:
            logger.warning(f"Budget check failed, ignoring budget this cycle: {e}")
            return None

    def _update_ceiling(self, now: datetime) -> None:
        snapshot = self.monitor.snapshot()
        budget = compute_ceiling(snapshot, self.daemon, self._remaining_budget(), self.external_cap)
        with self.store.update() as state:
            if state.ceiling != budget.ceiling:
                logger.info(
                    f"Ceiling {state.ceiling} -> {budget.ceiling} (limited by {budget.limiting})"
                )
                self._emit(
                    EventType.SCALE_ADJUSTED,
                    previous=state.ceiling,
                    ceiling=budget.ceiling,
                    limiting=budget.limiting,
                    resources=budget.as_dict(),
                )
            state.ceiling = budget.ceiling
            state.resources = budget.as_dict()

    def _poll(self, now: datetime, history) -> None:
        try:
            tickets = self.tracker.list_ready(self.daemon.watch_label)
        except CapabilityError as e:
            logger.error(f"Tracker poll failed: {e}")
            return

        predicted = lower_median(
            [
                float(e.cost_usd)
                for e in history
                if e.type == EventType.PIPELINE_COMPLETED.value and e.cost_usd is not None
            ]
        )
        candidates = [self._to_item(t, now, predicted) for t in tickets]

        with self.store.update() as state:
            state.last_poll = now
            finished = {c.issue for c in state.completed if c.result in FINISHED_RESULTS}
            queue = AdmissionQueue(state.queue)
            added = queue.merge(
                [c for c in candidates if c.issue not in finished], state.active_issues()
            )
        for item in added:
            logger.info(f"Queued #{item.issue} (score {item.score}): {item.title}")
            self._emit(EventType.QUEUE_ENQUEUED, issue=item.issue, score=item.score)

    def _to_item(self, ticket: Ticket, now: datetime, predicted_cost: float | None) -> QueueItem:
        return QueueItem(
            issue=ticket.number,
            title=ticket.title,
            score=triage_score(ticket, now, predicted_cost, self.daemon.cost_per_job_usd),
            created_at=ticket.created_at,
            enqueued_at=now,
            labels=list(ticket.labels),
        )

    def _admit(self, now: datetime) -> list[Job]:
        spawned = []
        while True:
            with self.store.update() as state:
                if len(state.active) >= state.ceiling or not state.queue:
                    break
                single = state.ceiling == 1
                if (
                    single
                    and state.last_spawn_at is not None
                    and (now - state.last_spawn_at).total_seconds() < self.daemon.stagger_s
                ):
                    logger.debug("Single slot: staggering next spawn")
                    break
                breaker = self._breaker(state)
                if not breaker.allow(now):
                    logger.debug("Spawn breaker open; leaving queue untouched")
                    break
                item = AdmissionQueue(state.queue).pop_next(state.last_selected, single)
                state.last_selected = item.issue
                slot = state.free_slot()
                job_id = generate_job_id()

            # Spawning can take a while (worktree creation); the lock is not held
            try:
                job = self.spawner.spawn(item, job_id, self.daemon.template, slot=slot)
            except SpawnError as e:
                logger.error(f"Spawn failed for #{item.issue}: {e}")
                with self.store.update() as state:
                    AdmissionQueue(state.queue).push(item)
                    self._breaker(state).record_failure(now)
                self._emit(EventType.JOB_SPAWN_FAILED, issue=item.issue, error=str(e))
                break

            with self.store.update() as state:
                state.active.append(job)
                state.last_spawn_at = now
                self._breaker(state).record_success(now)
            self._emit(
                EventType.JOB_SPAWNED,
                issue=job.issue,
                job_id=job.job_id,
                pid=job.pid,
                slot=job.slot,
                score=job.score,
            )
            spawned.append(job)
        return spawned

    def _breaker(self, state: SchedulerState) -> CircuitBreaker:
        return CircuitBreaker(
            state.breaker,
            threshold=self.daemon.breaker_threshold,
            window_s=self.daemon.breaker_window_s,
            cooldown_s=self.daemon.breaker_cooldown_s,
            emit=self._emit,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_forever(self) -> None:
        """Cycle until a stop is requested (signal or shutdown flag)."""
        logger.info("Scheduler loop started")
        while not self.stop_requested:
            try:
                state = self.run_cycle()
                interval = poll_interval(self.daemon, len(state.queue), state.empty_cycles)
            except Exception as e:
                tb_lines = traceback.format_exception(type(e), e, e.__traceback__)
                logger.error(f"Scheduler cycle failed: {e}\n{''.join(tb_lines)}")
                interval = self.daemon.poll_interval_s

            # Tick in 1s steps so a stop is noticed promptly
            for _ in range(int(interval)):
                if self.stop_requested:
                    break
                self._sleep(1)
        logger.info("Scheduler loop stopped")
