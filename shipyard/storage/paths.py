# shipyard/storage/paths.py
"""
File layout.

RunPaths is per project (or per worktree for scheduler-spawned runs):

    <project>/.shipyard/pipeline-state.md        state document
    <project>/.shipyard/pipeline-state.md.lock   single-writer lock
    <project>/.shipyard/pipeline-artifacts/      stage outputs
    <project>/.shipyard/checkpoints/<run_id>/    pre-attempt snapshots
    <project>/.shipyard/abort-requested          abort flag
    <project>/.shipyard/archive/<run_id>/        finished runs

HomePaths is the shared data directory used by all runs and the daemon.
"""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RunPaths:
    project_dir: Path
    state_dir_name: str = ".shipyard"

    @property
    def state_dir(self) -> Path:
        return self.project_dir / self.state_dir_name

    @property
    def state_file(self) -> Path:
        return self.state_dir / "pipeline-state.md"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "pipeline-state.md.lock"

    @property
    def artifacts_dir(self) -> Path:
        return self.state_dir / "pipeline-artifacts"

    @property
    def checkpoints_dir(self) -> Path:
        return self.state_dir / "checkpoints"

    @property
    def abort_flag(self) -> Path:
        return self.state_dir / "abort-requested"

    @property
    def archive_dir(self) -> Path:
        return self.state_dir / "archive"


@dataclass(frozen=True)
class HomePaths:
    home: Path

    @property
    def events_file(self) -> Path:
        return self.home / "events.jsonl"

    @property
    def heartbeats_dir(self) -> Path:
        return self.home / "heartbeats"

    @property
    def daemon_state_file(self) -> Path:
        return self.home / "daemon-state.json"

    @property
    def daemon_state_lock(self) -> Path:
        return self.home / "daemon-state.json.lock"

    @property
    def daemon_lock(self) -> Path:
        return self.home / "daemon.lock"

    @property
    def shutdown_flag(self) -> Path:
        return self.home / "daemon.shutdown"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def costs_file(self) -> Path:
        return self.home / "costs.jsonl"

    @property
    def tickets_dir(self) -> Path:
        return self.home / "tickets"

    @property
    def daemon_log(self) -> Path:
        return self.logs_dir / "daemon.log"
