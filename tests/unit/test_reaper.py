# tests/unit/test_reaper.py
"""
Process spawning and reaping with real child processes.

The child commands are plain shell commands; state documents are written
by the test the way a run would leave them.
"""

import os
import sys
from datetime import timedelta

import pytest

from shipyard.capabilities.fakes import FakeVCS
from shipyard.errors import CapabilityError, SpawnError
from shipyard.models.events import EventType
from shipyard.models.jobs import QueueItem
from shipyard.models.runs import PipelineRun, RunStatus
from shipyard.models.templates import PipelineTemplate, StageSpec
from shipyard.pipeline.engine import JOB_ENV
from shipyard.procutil import pid_alive
from shipyard.scheduler.reaper import Reaper
from shipyard.scheduler.spawner import ProcessSpawner, daemon_branch, default_command
from shipyard.scheduler.state import SchedulerState
from shipyard.scheduler.timeouts import TimeoutPolicy
from shipyard.storage.heartbeat import Heartbeat, HeartbeatStore
from shipyard.storage.paths import RunPaths
from shipyard.storage.state_document import StateDocument
from shipyard.timeutil import utc_now


def _item(issue=1):
    return QueueItem(issue=issue, title=f"Ticket {issue}", score=12, created_at=utc_now())


def _write_run(workdir, status, error=None):
    run = PipelineRun(goal="g", template=PipelineTemplate(name="t", stages=[StageSpec(id="intake")]))
    run.init_stage_map()
    if status != RunStatus.PENDING:
        run.transition(RunStatus.RUNNING)
        run.transition(status)
    run.error = error
    StateDocument(RunPaths(workdir)).save(run, "written by test")


class FailingWorktreeVCS(FakeVCS):
    def add_worktree(self, repo, path, branch, base):
        raise CapabilityError("fatal: invalid reference: main")


@pytest.fixture
def make_spawner(tmp_path, home, config):
    def _make(command, vcs=None, use_worktrees=False) -> ProcessSpawner:
        return ProcessSpawner(
            tmp_path / "repo",
            home,
            config,
            vcs or FakeVCS(),
            command_factory=lambda mode, item, job_id, template, branch: list(command),
            use_worktrees=use_worktrees,
        )

    return _make


@pytest.fixture
def make_reaper(home, config):
    def _make(spawner, events) -> Reaper:
        config.daemon.kill_grace_s = 1.0
        return Reaper(
            spawner,
            HeartbeatStore(home.heartbeats_dir),
            TimeoutPolicy(config.daemon),
            config.daemon,
            emit=lambda event_type, **fields: events.append((event_type, fields)),
        )

    return _make


def _wait(spawner, job):
    spawner._procs[job.pid].wait(timeout=10)


class TestProcessSpawner:
    def test_default_command(self):
        cmd = default_command("start", _item(5), "abc", "autonomous", daemon_branch(5))
        assert cmd[:3] == [sys.executable, "-m", "shipyard"]
        assert cmd[3:6] == ["start", "--job-id", "abc"]
        assert "--skip-gates" in cmd and "daemon/issue-5" in cmd
        assert default_command("resume", _item(5), "abc", "t", "b")[3:] == ["resume", "--job-id", "abc"]

    def test_spawn_sets_env_log_and_workdir(self, make_spawner, home):
        spawner = make_spawner(["sh", "-c", f'echo "${JOB_ENV} $SHIPYARD_HOME"; pwd'])
        job = spawner.spawn(_item(3), "job-3", "autonomous", slot=1)
        _wait(spawner, job)

        output = open(job.log_path).read().split("\n")
        assert output[0] == f"job-3 {home.home}"
        assert output[1] == job.workdir
        assert job.workdir.endswith(os.path.join(".worktrees", "daemon-issue-3"))
        assert job.state_path.endswith(os.path.join("daemon-issue-3", ".shipyard", "pipeline-state.md"))
        assert (job.slot, job.score) == (1, 12)
        assert spawner.exit_code(job) == 0
        assert not spawner.is_running(job)

    def test_existing_unfinished_workdir_resumes(self, make_spawner):
        spawner = make_spawner(["true"])
        workdir = spawner.workdir_for(4)
        workdir.mkdir(parents=True)
        assert spawner.prepare_workdir(_item(4)) == (workdir, "start")

        _write_run(workdir, RunStatus.PAUSED_FOR_GATE)
        assert spawner.prepare_workdir(_item(4)) == (workdir, "resume")

        _write_run(workdir, RunStatus.FAILED)
        assert spawner.prepare_workdir(_item(4))[1] == "start"

    def test_worktree_created_on_daemon_branch(self, make_spawner):
        vcs = FakeVCS()
        spawner = make_spawner(["true"], vcs=vcs, use_worktrees=True)
        workdir, _ = spawner.prepare_workdir(_item(8))
        assert vcs.worktrees[workdir] == "daemon/issue-8"

    def test_worktree_failure_is_spawn_error(self, make_spawner):
        spawner = make_spawner(["true"], vcs=FailingWorktreeVCS(), use_worktrees=True)
        with pytest.raises(SpawnError, match="worktree"):
            spawner.spawn(_item(2), "j", "autonomous")

    def test_missing_executable_is_spawn_error(self, make_spawner):
        spawner = make_spawner(["/nonexistent/shipyard-binary"])
        with pytest.raises(SpawnError):
            spawner.spawn(_item(2), "j", "autonomous")


class TestReaper:
    def test_stalled_job_is_killed_and_run_force_failed(self, make_spawner, make_reaper):
        events = []
        spawner = make_spawner(["sleep", "60"])
        job = spawner.spawn(_item(1), "job-1", "autonomous")
        _write_run(spawner.workdir_for(1), RunStatus.RUNNING)
        doc = StateDocument(RunPaths(spawner.workdir_for(1)))

        job.started_at = utc_now() - timedelta(seconds=1000)
        state = SchedulerState(active=[job])
        finished = make_reaper(spawner, events).reap(state, utc_now())

        assert not pid_alive(job.pid)
        assert finished[0].result == "requeued"
        assert finished[0].failure_class == "stalled"
        assert state.active == []
        assert state.queue[0].issue == 1 and state.queue[0].attempts == 1
        assert state.retry_counts == {1: 1}

        failed = doc.load()
        assert failed.status == RunStatus.FAILED
        assert failed.error.startswith("Heartbeat stale")
        types = [e[0] for e in events]
        assert types == [EventType.JOB_KILLED, EventType.JOB_REQUEUED, EventType.JOB_REAPED]

    def test_fresh_heartbeat_keeps_job(self, make_spawner, make_reaper, home):
        spawner = make_spawner(["sleep", "60"])
        job = spawner.spawn(_item(1), "job-1", "autonomous")
        try:
            job.started_at = utc_now() - timedelta(hours=2)
            HeartbeatStore(home.heartbeats_dir).write(Heartbeat(job_id="job-1", pid=job.pid, stage="build"))
            state = SchedulerState(active=[job])

            assert make_reaper(spawner, []).reap(state, utc_now()) == []
            assert state.active[0].stage == "build"
            assert state.active[0].last_heartbeat is not None
        finally:
            spawner._procs[job.pid].kill()
            _wait(spawner, job)

    def test_removed_heartbeat_ages_from_last_seen(self, make_spawner, make_reaper, home, config):
        events = []
        spawner = make_spawner(["sleep", "60"])
        job = spawner.spawn(_item(6), "job-6", "autonomous")
        _write_run(spawner.workdir_for(6), RunStatus.RUNNING)
        heartbeats = HeartbeatStore(home.heartbeats_dir)
        reaper = make_reaper(spawner, events)

        start = utc_now()
        job.started_at = start - timedelta(hours=2)
        heartbeats.write(Heartbeat(job_id="job-6", pid=job.pid, stage="build", updated_at=start))
        state = SchedulerState(active=[job])
        assert reaper.reap(state, start) == []
        assert state.active[0].last_heartbeat == start

        heartbeats.clear("job-6")
        timeout = TimeoutPolicy(config.daemon).heartbeat_timeout("build")
        later = start + timedelta(seconds=timeout + 5)
        finished = reaper.reap(state, later)

        assert not pid_alive(job.pid)
        assert finished[0].failure_class == "stalled"
        assert state.active == []
        run = StateDocument(RunPaths(spawner.workdir_for(6))).load()
        assert run.status == RunStatus.FAILED
        assert "in stage build" in run.error
        assert events[0][0] == EventType.JOB_KILLED

    def test_exit_with_unfinished_run_is_failure(self, make_spawner, make_reaper):
        events = []
        spawner = make_spawner(["sh", "-c", "exit 3"])
        job = spawner.spawn(_item(2), "job-2", "autonomous")
        _wait(spawner, job)
        _write_run(spawner.workdir_for(2), RunStatus.PAUSED_FOR_GATE)

        state = SchedulerState(active=[job])
        entry = make_reaper(spawner, events).reap(state, utc_now())[0]

        assert entry.result == "requeued"
        run = StateDocument(RunPaths(spawner.workdir_for(2))).load()
        assert run.status == RunStatus.FAILED
        assert run.error == "Process exited (code 3) with run still paused_for_gate"

    def test_completed_run_is_success(self, make_spawner, make_reaper, home):
        spawner = make_spawner(["true"])
        job = spawner.spawn(_item(3), "job-3", "autonomous")
        _wait(spawner, job)
        _write_run(spawner.workdir_for(3), RunStatus.COMPLETE)
        HeartbeatStore(home.heartbeats_dir).write(Heartbeat(job_id="job-3", pid=job.pid))

        state = SchedulerState(active=[job], retry_counts={3: 1})
        entry = make_reaper(spawner, []).reap(state, utc_now())[0]

        assert entry.result == "success"
        assert state.retry_counts == {}
        assert state.completed[-1].issue == 3
        assert HeartbeatStore(home.heartbeats_dir).read("job-3") is None

    def test_no_state_document_uses_exit_code(self, make_spawner, make_reaper):
        spawner = make_spawner(["true"])
        job = spawner.spawn(_item(4), "job-4", "autonomous")
        _wait(spawner, job)
        assert make_reaper(spawner, []).reap(SchedulerState(active=[job]), utc_now())[0].result == "success"

    def test_auth_failure_is_not_requeued(self, make_spawner, make_reaper):
        spawner = make_spawner(["sh", "-c", "exit 1"])
        job = spawner.spawn(_item(5), "job-5", "autonomous")
        _wait(spawner, job)
        _write_run(spawner.workdir_for(5), RunStatus.FAILED, error="Agent failed fatally:\nInvalid API key")

        state = SchedulerState(active=[job])
        entry = make_reaper(spawner, []).reap(state, utc_now())[0]
        assert (entry.result, entry.failure_class) == ("failed", "auth_error")
        assert state.queue == []

    def test_retry_budget_exhausted(self, make_spawner, make_reaper, config):
        spawner = make_spawner(["sh", "-c", "echo 'Test command exited with 1'; exit 1"])
        job = spawner.spawn(_item(6), "job-6", "autonomous")
        _wait(spawner, job)

        state = SchedulerState(active=[job], retry_counts={6: 2})
        entry = make_reaper(spawner, []).reap(state, utc_now())[0]
        assert (entry.result, entry.failure_class) == ("failed", "build_failure")
        assert state.queue == []
