# shipyard/capabilities/vcs.py
"""git through subprocess."""

import logging
import subprocess
from pathlib import Path

from shipyard.capabilities.protocols import VersionControl
from shipyard.capabilities.retry import external_retry
from shipyard.errors import CapabilityError

logger = logging.getLogger(__name__)


def _git(cwd: Path, *args: str, check: bool = True, timeout: int = 120) -> subprocess.CompletedProcess:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise CapabilityError("git is not installed") from e
    except subprocess.TimeoutExpired as e:
        raise CapabilityError(f"git {args[0]} timed out", transient=True) from e
    if check and proc.returncode != 0:
        raise CapabilityError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")
    return proc


class GitVCS(VersionControl):
    """Local git repository operations."""

    def current_branch(self, cwd: Path) -> str:
        return _git(cwd, "rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def branch_exists(self, cwd: Path, branch: str) -> bool:
        proc = _git(cwd, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return proc.returncode == 0

    def checkout_branch(self, cwd: Path, branch: str, base: str) -> None:
        if self.current_branch(cwd) == branch:
            return
        if self.branch_exists(cwd, branch):
            _git(cwd, "checkout", branch)
        else:
            _git(cwd, "checkout", "-b", branch, base)
        logger.info(f"Checked out {branch}")

    def add_worktree(self, repo: Path, path: Path, branch: str, base: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(repo, branch):
            _git(repo, "worktree", "add", str(path), branch)
        else:
            _git(repo, "worktree", "add", "-b", branch, str(path), base)
        logger.info(f"Created worktree {path} on {branch}")

    def remove_worktree(self, repo: Path, path: Path) -> None:
        _git(repo, "worktree", "remove", "--force", str(path))
        _git(repo, "worktree", "prune", check=False)
        logger.info(f"Removed worktree {path}")

    def commit_all(self, cwd: Path, message: str) -> bool:
        _git(cwd, "add", "-A")
        if _git(cwd, "diff", "--cached", "--quiet", check=False).returncode == 0:
            return False
        _git(cwd, "commit", "-m", message)
        return True

    @external_retry
    def push(self, cwd: Path, branch: str) -> None:
        _git(cwd, "push", "-u", "origin", branch, timeout=300)

    def diff(self, cwd: Path, base: str) -> str:
        return _git(cwd, "diff", f"{base}...HEAD").stdout

    def head_sha(self, cwd: Path) -> str:
        return _git(cwd, "rev-parse", "HEAD").stdout.strip()
