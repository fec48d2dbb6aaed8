# tests/unit/test_scheduler.py
"""Tests for triage scoring, queue order, the spawn breaker, ceilings, timeouts and the state store."""

from datetime import datetime, timedelta, timezone

import pytest

from shipyard.config.schema import DaemonConfig
from shipyard.errors import StateDocumentError
from shipyard.models.events import Event, EventType
from shipyard.models.jobs import CompletedJob, Job, QueueItem, Ticket
from shipyard.scheduler.breaker import BreakerSnapshot, BreakerState, CircuitBreaker
from shipyard.scheduler.failures import (
    FailureClass,
    classify_failure,
    classify_log,
    retry_budget,
)
from shipyard.scheduler.queue import AdmissionQueue
from shipyard.scheduler.resources import (
    ResourceSnapshot,
    budget_ceiling,
    compute_ceiling,
    cpu_ceiling,
    memory_ceiling,
)
from shipyard.scheduler.scoring import blockers, triage_score
from shipyard.scheduler.state import COMPLETED_HISTORY, SchedulerState, SchedulerStore
from shipyard.scheduler.timeouts import TimeoutPolicy, poll_interval

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _item(issue, score=10, age_days=0.0):
    return QueueItem(issue=issue, score=score, created_at=NOW - timedelta(days=age_days))


class TestTriageScore:
    def test_components_add_up(self):
        ticket = Ticket(
            number=1,
            title="Fix crash",
            body="Crashes on start",
            labels=["urgent", "bug"],
            created_at=NOW - timedelta(days=8),
            blocks=[2],
        )
        # priority 30 + age 15 + complexity 20 + blocks 15 + type 10
        assert triage_score(ticket, NOW) == 90

    def test_blocked_ticket_drops(self):
        ticket = Ticket(number=1, title="t", body="Blocked by #4 and depends on #5", created_at=NOW)
        assert blockers(ticket) == [4, 5]
        # complexity 20 - 15 - 5
        assert triage_score(ticket, NOW) == 0

    def test_predicted_cost_penalty(self):
        ticket = Ticket(number=1, title="t", labels=["p1"], created_at=NOW)
        cheap = triage_score(ticket, NOW, predicted_cost=0.5, cost_cap=5.0)
        dear = triage_score(ticket, NOW, predicted_cost=50.0, cost_cap=5.0)
        assert cheap == 39
        assert dear == 30

    def test_long_body_with_many_files(self):
        body = " ".join(f"src/mod{i}.py" for i in range(10)) + " x" * 600
        ticket = Ticket(number=1, title="t", body=body, created_at=NOW)
        assert triage_score(ticket, NOW) == 0

    def test_clamped_to_100(self):
        ticket = Ticket(number=1, title="t", labels=["p0", "security", "p1"], created_at=NOW - timedelta(days=30), blocks=[1])
        assert 0 <= triage_score(ticket, NOW) <= 100


class TestAdmissionQueue:
    def test_order_score_then_oldest_then_number(self):
        queue = AdmissionQueue([_item(3, 10, 1), _item(2, 10, 5), _item(1, 50), _item(4, 10, 5)])
        assert [i.issue for i in queue.ordered()] == [1, 2, 4, 3]

    def test_merge_skips_queued_and_active(self):
        items = [_item(1)]
        queue = AdmissionQueue(items)
        added = queue.merge([_item(1), _item(2), _item(3)], active_issues={3})
        assert [i.issue for i in added] == [2]
        assert [i.issue for i in items] == [1, 2]

    def test_single_slot_rotates_ties(self):
        queue = AdmissionQueue([_item(1, 10, 2), _item(2, 10, 1)])
        assert queue.pop_next(last_selected=1, single_slot=True).issue == 2

    def test_rotation_only_on_ties_and_single_slot(self):
        assert AdmissionQueue([_item(1, 20), _item(2, 10)]).pop_next(1, True).issue == 1
        assert AdmissionQueue([_item(1, 10, 2), _item(2, 10, 1)]).pop_next(1, False).issue == 1

    def test_push_replaces(self):
        queue = AdmissionQueue([_item(1, 10)])
        queue.push(_item(1, 40))
        assert len(queue) == 1 and queue.items[0].score == 40
        assert AdmissionQueue([]).pop_next() is None


class TestCircuitBreaker:
    def _breaker(self, snap=None, events=None):
        emit = (lambda t, **k: events.append(t)) if events is not None else None
        return CircuitBreaker(snap or BreakerSnapshot(), threshold=3, window_s=300, cooldown_s=600, emit=emit)

    def test_opens_after_threshold_within_window(self):
        events = []
        breaker = self._breaker(events=events)
        for i in range(3):
            assert breaker.allow(NOW + timedelta(seconds=i))
            breaker.record_failure(NOW + timedelta(seconds=i))
        assert breaker.state == BreakerState.OPEN
        assert not breaker.allow(NOW + timedelta(seconds=10))
        assert events == [EventType.BREAKER_OPENED]

    def test_old_failures_fall_out_of_window(self):
        breaker = self._breaker()
        breaker.record_failure(NOW)
        breaker.record_failure(NOW + timedelta(seconds=10))
        breaker.record_failure(NOW + timedelta(seconds=400))
        assert breaker.state == BreakerState.CLOSED

    def test_half_open_allows_one_trial(self):
        breaker = self._breaker()
        for _ in range(3):
            breaker.record_failure(NOW)
        later = NOW + timedelta(seconds=601)
        assert breaker.allow(later)
        assert breaker.state == BreakerState.HALF_OPEN
        assert not breaker.allow(later)

        breaker.record_success(later)
        assert breaker.state == BreakerState.CLOSED
        assert breaker.allow(later)

    def test_failed_trial_reopens(self):
        snap = BreakerSnapshot()
        breaker = self._breaker(snap)
        for _ in range(3):
            breaker.record_failure(NOW)
        later = NOW + timedelta(seconds=601)
        breaker.allow(later)
        breaker.record_failure(later)
        assert snap.state == BreakerState.OPEN
        assert snap.opened_at == later


class TestResources:
    def test_cpu_scales_with_load(self):
        def snap(load):
            return ResourceSnapshot(cpu_count=8, load_ratio=load, available_mem_gb=64)

        assert cpu_ceiling(snap(0.1), 0.75) == 6
        assert cpu_ceiling(snap(0.75), 0.75) == 4
        assert cpu_ceiling(snap(0.9), 0.75) == 3
        assert cpu_ceiling(snap(0.99), 0.75) == 1

    def test_memory_and_budget(self):
        assert memory_ceiling(ResourceSnapshot(4, 0.0, 9.0), 4.0) == 2
        assert memory_ceiling(ResourceSnapshot(4, 0.0, 1.0), 4.0) == 1
        assert budget_ceiling(None, 5.0) is None
        assert budget_ceiling(12.0, 5.0) == 2
        assert budget_ceiling(-3.0, 5.0) == 0

    def test_ceiling_is_minimum_of_constraints(self):
        config = DaemonConfig(max_parallel=5, max_workers=8, worker_mem_gb=4.0)
        budget = compute_ceiling(ResourceSnapshot(16, 0.0, 12.0), config, remaining_budget=None)
        assert budget.ceiling == 3
        assert budget.limiting == "memory"

        budget = compute_ceiling(ResourceSnapshot(16, 0.0, 64.0), config, remaining_budget=4.0)
        assert budget.ceiling == 0
        assert budget.limiting == "budget"

        budget = compute_ceiling(ResourceSnapshot(16, 0.0, 64.0), config, None, external_cap=1)
        assert (budget.ceiling, budget.limiting) == (1, "external")
        assert budget.as_dict()["ceiling"] == 1


class TestTimeouts:
    def _events(self, stage, durations):
        return [
            Event(ts="2026-01-01T00:00:00Z", type=EventType.STAGE_COMPLETED.value, stage=stage, duration_s=d)
            for d in durations
        ]

    def test_fallbacks_before_history(self):
        policy = TimeoutPolicy(DaemonConfig())
        assert policy.heartbeat_timeout("build") == 300.0
        assert policy.heartbeat_timeout("deploy") == 120.0
        assert policy.heartbeat_timeout(None) == 120.0

    def test_learns_from_p90(self):
        policy = TimeoutPolicy(DaemonConfig(), self._events("build", [100.0, 200.0, 600.0]))
        assert policy.heartbeat_timeout("build") == 900.0

    def test_floor_and_min_samples(self):
        policy = TimeoutPolicy(
            DaemonConfig(heartbeat_floor_s=60),
            self._events("intake", [1.0, 2.0, 3.0]) + self._events("plan", [500.0, 500.0]),
        )
        assert policy.heartbeat_timeout("intake") == 60.0
        assert policy.heartbeat_timeout("plan") == 60.0  # per-stage default, too few samples

    def test_poll_interval(self):
        config = DaemonConfig()
        assert poll_interval(config, queue_depth=2, empty_cycles=9) == config.busy_poll_interval_s
        assert poll_interval(config, 0, 0) == config.poll_interval_s
        assert poll_interval(config, 0, config.idle_cycles_before_backoff) == config.idle_poll_interval_s


class TestFailures:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Error: Invalid API key", FailureClass.AUTH_ERROR),
            ("CapabilityError: ticket #12 not found", FailureClass.INVALID_ISSUE),
            ("prompt is too long: 210000 tokens", FailureClass.CONTEXT_EXHAUSTION),
            ("API Error: 529 overloaded", FailureClass.API_ERROR),
            ("Build loop stopped: iteration cap reached (20)", FailureClass.BUILD_FAILURE),
            ("segfault", FailureClass.UNKNOWN),
        ],
    )
    def test_classify(self, text, expected):
        assert classify_failure(text) == expected

    def test_budgets(self):
        config = DaemonConfig(max_retries=5)
        assert retry_budget(FailureClass.AUTH_ERROR, config) == 0
        assert retry_budget(FailureClass.API_ERROR, config) == 4
        assert retry_budget(FailureClass.STALLED, config) == 2
        assert retry_budget(FailureClass.UNKNOWN, config) == 5

    def test_classify_log_reads_tail(self, tmp_path):
        log = tmp_path / "issue-1.log"
        log.write_text("x" * 50_000 + "\nTest command exited with 1\n")
        assert classify_log(log) == FailureClass.BUILD_FAILURE
        assert classify_log(tmp_path / "missing.log") == FailureClass.UNKNOWN
        assert classify_log(None) == FailureClass.UNKNOWN


class TestSchedulerStore:
    def test_missing_file_is_fresh_state(self, tmp_path):
        store = SchedulerStore(tmp_path / "state.json", tmp_path / "state.lock")
        state = store.load()
        assert state.queue == [] and state.ceiling == 0

    def test_update_persists(self, tmp_path):
        store = SchedulerStore(tmp_path / "state.json", tmp_path / "state.lock")
        with store.update() as state:
            state.queue.append(_item(7))
            state.retry_counts[7] = 1

        reloaded = store.load()
        assert reloaded.queue[0].issue == 7
        assert reloaded.retry_counts == {7: 1}
        assert not (tmp_path / "state.lock").exists()

    def test_update_discards_on_error(self, tmp_path):
        store = SchedulerStore(tmp_path / "state.json", tmp_path / "state.lock")
        with pytest.raises(RuntimeError):
            with store.update() as state:
                state.ceiling = 9
                raise RuntimeError("boom")
        assert store.load().ceiling == 0
        assert not store.lock.path.exists()

    @pytest.mark.parametrize("content", ["{broken", '{"version": 99}', '{"queue": "nope"}'])
    def test_malformed_state(self, tmp_path, content):
        (tmp_path / "state.json").write_text(content)
        with pytest.raises(StateDocumentError):
            SchedulerStore(tmp_path / "state.json", tmp_path / "state.lock").load()

    def test_free_slot_and_history_trim(self):
        job = dict(issue=1, pid=1, workdir="w", state_path="s")
        state = SchedulerState(active=[Job(job_id="a", slot=0, **job), Job(job_id="b", slot=2, **job)])
        assert state.free_slot() == 1
        for i in range(COMPLETED_HISTORY + 5):
            state.add_completed(CompletedJob(issue=i, job_id=str(i), result="success"))
        assert len(state.completed) == COMPLETED_HISTORY
        assert state.completed[0].issue == 5
