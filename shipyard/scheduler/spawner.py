# shipyard/scheduler/spawner.py
"""
Spawning run processes.

Each admitted ticket runs as its own `python -m shipyard` process in its own
worktree (daemon-issue-N on branch daemon/issue-N), in a new session so the
whole tree can be signalled at once. A worktree left behind by a failed or
interrupted attempt is reused: with `resume` when it still holds an
unfinished run, with `start` otherwise.
"""

import logging
import os
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path

from shipyard.capabilities.protocols import VersionControl
from shipyard.config.loader import HOME_ENV
from shipyard.config.schema import ShipyardConfig
from shipyard.errors import ShipyardError, SpawnError, StateDocumentError
from shipyard.models.jobs import Job, QueueItem
from shipyard.pipeline.engine import JOB_ENV
from shipyard.pipeline.worktree import cleanup_worktree
from shipyard.procutil import pid_alive
from shipyard.storage.paths import HomePaths, RunPaths
from shipyard.storage.state_document import load_state
from shipyard.timeutil import utc_now

logger = logging.getLogger(__name__)

# (mode, item, job_id, template, branch) -> argv
CommandFactory = Callable[[str, QueueItem, str, str, str], list[str]]


def default_command(mode: str, item: QueueItem, job_id: str, template: str, branch: str) -> list[str]:
    cmd = [sys.executable, "-m", "shipyard", mode, "--job-id", job_id]
    if mode == "start":
        cmd += [
            "--issue",
            str(item.issue),
            "--template",
            template,
            "--branch",
            branch,
            "--skip-gates",
            "--no-worktree",
        ]
    return cmd


def daemon_branch(issue: int) -> str:
    return f"daemon/issue-{issue}"


class ProcessSpawner:
    def __init__(
        self,
        repo_dir: Path,
        home: HomePaths,
        config: ShipyardConfig,
        vcs: VersionControl,
        command_factory: CommandFactory = default_command,
        use_worktrees: bool = True,
    ) -> None:
        self.repo_dir = Path(repo_dir).resolve()
        self.home = home
        self.config = config
        self.vcs = vcs
        self.command_factory = command_factory
        self.use_worktrees = use_worktrees
        self._procs: dict[int, subprocess.Popen] = {}

    def workdir_for(self, issue: int) -> Path:
        return self.repo_dir / self.config.pipeline.worktree_dir_name / f"daemon-issue-{issue}"

    def state_path_for(self, workdir: Path) -> Path:
        return RunPaths(workdir, self.config.pipeline.state_dir_name).state_file

    def _resumable(self, workdir: Path) -> bool:
        state_path = self.state_path_for(workdir)
        if not state_path.exists():
            return False
        try:
            return not load_state(state_path).is_terminal
        except StateDocumentError as e:
            logger.warning(f"Ignoring unreadable state in {workdir}: {e}")
            return False

    def prepare_workdir(self, item: QueueItem) -> tuple[Path, str]:
        """Create or reuse the issue's worktree. Returns (path, 'start'|'resume')."""
        workdir = self.workdir_for(item.issue)
        if workdir.exists():
            mode = "resume" if self._resumable(workdir) else "start"
            logger.info(f"Reusing {workdir} for #{item.issue} ({mode})")
            return workdir, mode
        if self.use_worktrees:
            try:
                self.vcs.add_worktree(
                    self.repo_dir, workdir, daemon_branch(item.issue), self.config.pipeline.base_branch
                )
            except ShipyardError as e:
                raise SpawnError(f"Cannot create worktree for #{item.issue}: {e}") from e
        else:
            workdir.mkdir(parents=True, exist_ok=True)
        return workdir, "start"

    def spawn(self, item: QueueItem, job_id: str, template: str, slot: int = 0) -> Job:
        """
        Start a run process for item.

        Raises:
            SpawnError: The worktree or the process could not be created
        """
        workdir, mode = self.prepare_workdir(item)
        cmd = self.command_factory(mode, item, job_id, template, daemon_branch(item.issue))
        log_path = self.home.logs_dir / f"issue-{item.issue}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, HOME_ENV: str(self.home.home), JOB_ENV: job_id}

        try:
            with log_path.open("ab") as log:
                proc = subprocess.Popen(
                    cmd,
                    cwd=workdir,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    env=env,
                )
        except OSError as e:
            raise SpawnError(f"Cannot start run for #{item.issue}: {e}") from e

        self._procs[proc.pid] = proc
        logger.info(f"Spawned #{item.issue} as PID {proc.pid} ({mode}, job {job_id})")
        return Job(
            job_id=job_id,
            issue=item.issue,
            title=item.title,
            pid=proc.pid,
            workdir=str(workdir),
            state_path=str(self.state_path_for(workdir)),
            log_path=str(log_path),
            started_at=utc_now(),
            slot=slot,
            attempts=item.attempts,
            template=template,
            created_at=item.created_at,
            score=item.score,
        )

    def is_running(self, job: Job) -> bool:
        proc = self._procs.get(job.pid)
        if proc is not None:
            return proc.poll() is None
        return pid_alive(job.pid)

    def exit_code(self, job: Job) -> int | None:
        proc = self._procs.get(job.pid)
        return proc.poll() if proc is not None else None

    def forget(self, job: Job) -> None:
        proc = self._procs.pop(job.pid, None)
        if proc is not None:
            proc.poll()

    def cleanup(self, job: Job) -> None:
        if not self.use_worktrees:
            return
        error = cleanup_worktree(self.vcs, self.repo_dir, Path(job.workdir))
        if error:
            logger.warning(f"Worktree for #{job.issue} left in place: {error}")
