# tests/unit/test_daemon.py
"""
Scheduler cycle and daemon lifecycle tests.

Spawning is replaced by an in-memory spawner so admission, reaping and the
breaker can be driven cycle by cycle with an explicit clock.
"""

import os
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from shipyard.capabilities.fakes import FakeCostReporter, FakeTracker
from shipyard.errors import CapabilityError, LockHeldError, SpawnError
from shipyard.models.events import EventType
from shipyard.models.jobs import Job, QueueItem, Ticket
from shipyard.scheduler.breaker import BreakerState
from shipyard.scheduler.daemon import Scheduler
from shipyard.scheduler.lifecycle import DaemonLifecycle, daemon_status, stop_daemon
from shipyard.scheduler.resources import ResourceSnapshot
from shipyard.storage.events import EventLog
from shipyard.timeutil import utc_now

T0 = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


class FakeSpawner:
    """Records spawns; jobs stay 'running' until finish() is called."""

    def __init__(self, tmp_path: Path, fail: bool = False) -> None:
        self.root = tmp_path / "spawned"
        self.fail = fail
        self.spawned: list[Job] = []
        self.attempts = 0
        self.exit_codes: dict[str, int] = {}
        self.forgotten: list[str] = []
        self.cleaned: list[str] = []
        self.now = T0

    def spawn(self, item: QueueItem, job_id: str, template: str, slot: int = 0) -> Job:
        self.attempts += 1
        if self.fail:
            raise SpawnError("fork failed")
        workdir = self.root / f"issue-{item.issue}"
        job = Job(
            job_id=job_id,
            issue=item.issue,
            title=item.title,
            pid=10_000_000 + len(self.spawned),
            workdir=str(workdir),
            state_path=str(workdir / ".shipyard" / "pipeline-state.md"),
            started_at=self.now,
            slot=slot,
            attempts=item.attempts,
            template=template,
            created_at=item.created_at,
            score=item.score,
        )
        self.spawned.append(job)
        return job

    def finish(self, issue: int, exit_code: int = 0) -> None:
        for job in self.spawned:
            if job.issue == issue and job.job_id not in self.exit_codes:
                self.exit_codes[job.job_id] = exit_code

    def is_running(self, job: Job) -> bool:
        return job.job_id not in self.exit_codes

    def exit_code(self, job: Job) -> int | None:
        return self.exit_codes.get(job.job_id)

    def forget(self, job: Job) -> None:
        self.forgotten.append(job.job_id)

    def cleanup(self, job: Job) -> None:
        self.cleaned.append(job.job_id)


class FakeMonitor:
    def __init__(self, cpu_count=32, load_ratio=0.0, available_mem_gb=256.0):
        self.snap = ResourceSnapshot(cpu_count, load_ratio, available_mem_gb)

    def snapshot(self) -> ResourceSnapshot:
        return self.snap


def _tickets(*numbers):
    return [
        Ticket(number=n, title=f"Ticket {n}", labels=["shipyard"], created_at=T0 - timedelta(days=1))
        for n in numbers
    ]


@pytest.fixture
def build_scheduler(tmp_path, home, config):
    def _build(tickets=(), max_parallel=2, spawner=None, tracker=None, cost=None) -> Scheduler:
        config.daemon.max_parallel = max_parallel
        return Scheduler(
            config,
            home,
            tracker or FakeTracker(list(tickets)),
            cost or FakeCostReporter(),
            spawner or FakeSpawner(tmp_path),
            monitor=FakeMonitor(),
            clock=lambda: T0,
            sleep=lambda _: None,
        )

    return _build


def _cycle(scheduler, now):
    scheduler.spawner.now = now
    return scheduler.run_cycle(now)


def _types(home):
    return [e.type for e in EventLog(home.events_file).read()]


class TestAdmission:
    def test_ceiling_is_never_exceeded(self, build_scheduler):
        scheduler = build_scheduler(_tickets(1, 2, 3, 4, 5), max_parallel=2)
        for i in range(3):
            state = _cycle(scheduler, T0 + timedelta(minutes=i))
            assert len(state.active) <= state.ceiling == 2
        assert len(scheduler.spawner.spawned) == 2
        assert len(state.queue) == 3

    def test_queue_drains_to_completion(self, build_scheduler):
        scheduler = build_scheduler(_tickets(1, 2, 3, 4, 5), max_parallel=2)
        spawner = scheduler.spawner
        now = T0
        for _ in range(20):
            state = _cycle(scheduler, now)
            assert len(state.active) <= 2
            for job in state.active:
                spawner.finish(job.issue)
            now += timedelta(minutes=1)
            if not state.queue and not state.active:
                break

        assert sorted(j.issue for j in spawner.spawned) == [1, 2, 3, 4, 5]
        assert [c.result for c in state.completed] == ["success"] * 5
        assert len(spawner.cleaned) == 5

    def test_admits_with_zero_active_jobs(self, build_scheduler):
        scheduler = build_scheduler(max_parallel=1)
        with scheduler.store.update() as state:
            state.queue.append(QueueItem(issue=9, created_at=T0))
        state = _cycle(scheduler, T0)
        assert [j.issue for j in state.active] == [9]
        assert state.queue == []

    def test_finished_tickets_are_not_requeued(self, build_scheduler):
        scheduler = build_scheduler(_tickets(1), max_parallel=1)
        _cycle(scheduler, T0)
        scheduler.spawner.finish(1)
        _cycle(scheduler, T0 + timedelta(minutes=1))
        state = _cycle(scheduler, T0 + timedelta(minutes=2))

        assert len(scheduler.spawner.spawned) == 1
        assert state.queue == [] and state.active == []
        assert state.empty_cycles == 2

    def test_budget_exhaustion_stops_admission(self, build_scheduler, home):
        scheduler = build_scheduler(_tickets(1), cost=FakeCostReporter(remaining=1.0))
        state = _cycle(scheduler, T0)

        assert state.ceiling == 0
        assert state.resources["budget"] == 0
        assert state.active == [] and len(state.queue) == 1
        assert EventType.SCALE_ADJUSTED.value not in _types(home)

    def test_ceiling_change_is_recorded(self, build_scheduler, home):
        scheduler = build_scheduler(_tickets(1), max_parallel=3)
        _cycle(scheduler, T0)
        events = EventLog(home.events_file).read(types=[EventType.SCALE_ADJUSTED])
        assert events[0].model_extra["ceiling"] == 3
        assert events[0].model_extra["limiting"] == "external"

    def test_tracker_failure_does_not_stop_the_cycle(self, build_scheduler):
        class BrokenTracker(FakeTracker):
            def list_ready(self, label):
                raise CapabilityError("tracker down", transient=True)

        scheduler = build_scheduler(tracker=BrokenTracker())
        with scheduler.store.update() as state:
            state.queue.append(QueueItem(issue=3, created_at=T0))
        assert [j.issue for j in _cycle(scheduler, T0).active] == [3]

    def test_predicted_cost_from_history_lowers_score(self, build_scheduler, home):
        log = EventLog(home.events_file)
        for cost in (5.0, 5.0, 9.0):
            log.emit(EventType.PIPELINE_COMPLETED, cost_usd=cost)
        scheduler = build_scheduler(_tickets(1), cost=FakeCostReporter(remaining=0.0))
        state = _cycle(scheduler, T0)
        # complexity 20 + age 0 - cost 10
        assert state.queue[0].score == 10


class TestSingleSlot:
    def test_stagger_between_spawns(self, build_scheduler):
        scheduler = build_scheduler(_tickets(1, 2), max_parallel=1)
        spawner = scheduler.spawner

        _cycle(scheduler, T0)
        spawner.finish(spawner.spawned[0].issue)
        state = _cycle(scheduler, T0 + timedelta(seconds=5))
        assert state.active == []

        state = _cycle(scheduler, T0 + timedelta(seconds=10))
        assert state.active == []
        assert len(spawner.spawned) == 1

        state = _cycle(scheduler, T0 + timedelta(seconds=31))
        assert len(spawner.spawned) == 2

    def test_tied_failing_ticket_does_not_starve_its_peer(self, build_scheduler, config):
        config.daemon.stagger_s = 0
        scheduler = build_scheduler(_tickets(1, 2), max_parallel=1)
        spawner = scheduler.spawner

        _cycle(scheduler, T0)
        first = spawner.spawned[0].issue
        spawner.finish(first, exit_code=1)
        _cycle(scheduler, T0 + timedelta(minutes=1))
        _cycle(scheduler, T0 + timedelta(minutes=2))

        assert spawner.spawned[1].issue != first
        state = scheduler.store.load()
        assert state.retry_counts == {first: 1}
        assert any(q.issue == first for q in state.queue)


class TestBreaker:
    def test_spawn_failures_open_the_breaker(self, build_scheduler, tmp_path, home):
        spawner = FakeSpawner(tmp_path, fail=True)
        scheduler = build_scheduler(_tickets(1, 2), spawner=spawner)

        for i in range(3):
            state = _cycle(scheduler, T0 + timedelta(seconds=i))
        assert spawner.attempts == 3
        assert state.breaker.state == BreakerState.OPEN
        assert len(state.queue) == 2

        _cycle(scheduler, T0 + timedelta(seconds=60))
        assert spawner.attempts == 3
        assert _types(home).count(EventType.JOB_SPAWN_FAILED.value) == 3

    def test_half_open_trial_closes_on_success(self, build_scheduler, tmp_path, config, home):
        spawner = FakeSpawner(tmp_path, fail=True)
        scheduler = build_scheduler(_tickets(1, 2), spawner=spawner)
        for i in range(3):
            _cycle(scheduler, T0 + timedelta(seconds=i))

        spawner.fail = False
        later = T0 + timedelta(seconds=config.daemon.breaker_cooldown_s + 10)
        state = _cycle(scheduler, later)
        assert len(state.active) == 2
        assert state.breaker.state == BreakerState.CLOSED
        types = _types(home)
        assert types.index(EventType.BREAKER_HALF_OPEN.value) < types.index(EventType.BREAKER_CLOSED.value)


class TestLoop:
    def test_run_forever_stops_on_request(self, build_scheduler):
        scheduler = build_scheduler(_tickets(1))
        calls = []
        scheduler._sleep = lambda s: (calls.append(s), scheduler.request_stop())
        scheduler.run_forever()
        assert calls == [1]
        assert scheduler.stop_requested

    def test_shutdown_flag_stops_loop(self, build_scheduler, home):
        scheduler = build_scheduler()
        home.shutdown_flag.parent.mkdir(parents=True, exist_ok=True)
        home.shutdown_flag.write_text("now")
        scheduler.run_forever()
        assert scheduler.spawner.attempts == 0

    def test_cycle_errors_are_logged_and_loop_continues(self, build_scheduler):
        scheduler = build_scheduler()
        cycles = []

        def _boom(now=None):
            cycles.append(now)
            if len(cycles) == 2:
                scheduler.request_stop()
            raise RuntimeError("disk full")

        scheduler.run_cycle = _boom
        scheduler.run_forever()
        assert len(cycles) == 2


class TestLifecycle:
    def test_single_instance(self, build_scheduler):
        first = DaemonLifecycle(build_scheduler(), install_signals=False)
        first.startup()
        try:
            with pytest.raises(LockHeldError):
                DaemonLifecycle(build_scheduler(), install_signals=False).startup()
            status = daemon_status(first.home)
            assert status["running"] is True
            assert status["pid"] == os.getpid()
        finally:
            first.shutdown()
        assert daemon_status(first.home)["running"] is False

    def test_startup_reaps_previous_session(self, build_scheduler, tmp_path, home):
        spawner = FakeSpawner(tmp_path)
        scheduler = build_scheduler(spawner=spawner)
        leftover = spawner.spawn(QueueItem(issue=4, created_at=T0), "old-job", "autonomous")
        spawner.finish(4, exit_code=0)
        with scheduler.store.update() as state:
            state.active.append(leftover)

        lifecycle = DaemonLifecycle(scheduler, install_signals=False)
        state = lifecycle.startup()
        try:
            assert state.active == []
            assert state.completed[-1].job_id == "old-job"
            assert state.pid == os.getpid()
            assert EventType.DAEMON_STARTED.value in _types(home)
        finally:
            lifecycle.shutdown()

    def test_shutdown_stops_children_and_requeues(self, build_scheduler, tmp_path, home, config):
        child = subprocess.Popen(["sleep", "60"])
        spawner = FakeSpawner(tmp_path)
        scheduler = build_scheduler(spawner=spawner)
        job = spawner.spawn(QueueItem(issue=6, title="six", created_at=T0), "live-job", "autonomous")
        job.pid = child.pid
        job.started_at = utc_now()
        config.daemon.kill_grace_s = 1.0
        with scheduler.store.update() as state:
            state.active.append(job)

        lifecycle = DaemonLifecycle(scheduler, install_signals=False)
        lifecycle.startup()
        lifecycle.shutdown()

        assert child.wait(timeout=15) is not None
        state = scheduler.store.load()
        assert state.active == [] and state.pid is None
        assert [q.issue for q in state.queue] == [6]
        assert not lifecycle.lock.path.exists()
        assert EventType.DAEMON_STOPPED.value in _types(home)

    def test_run_once_releases_lock(self, build_scheduler, home):
        scheduler = build_scheduler(_tickets(1, 2))
        lifecycle = DaemonLifecycle(scheduler, install_signals=False)
        state = lifecycle.run_once()
        assert len(state.active) == 2
        assert not lifecycle.lock.path.exists()

    def test_stop_without_daemon(self, home):
        assert stop_daemon(home, timeout=1) is True

    def test_status_without_state(self, home):
        status = daemon_status(home)
        assert status["running"] is False
        assert status["queue"] == [] and status["breaker"] == "closed"
