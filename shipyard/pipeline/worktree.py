# shipyard/pipeline/worktree.py
"""
Per-run worktrees.

A worktree is tied 1:1 to its run's branch so concurrent runs never share a
working directory. It is removed when the run completes and kept for
inspection when it fails; a removal failure is reported, never raised.
"""

import logging
from pathlib import Path

from shipyard.capabilities.protocols import VersionControl
from shipyard.errors import ShipyardError
from shipyard.pipeline.detection import slugify

logger = logging.getLogger(__name__)


def worktree_name(goal: str, issue: int | None, explicit: str | None = None) -> str:
    if explicit:
        return slugify(explicit, max_len=60)
    if issue is not None:
        return f"pipeline-issue-{issue}"
    return f"pipeline-{slugify(goal)}"


def worktree_branch(name: str) -> str:
    return f"pipeline/{name}"


def create_worktree(
    vcs: VersionControl, repo: Path, root_name: str, name: str, base: str
) -> tuple[Path, str]:
    """Create <repo>/<root_name>/<name> on branch pipeline/<name>."""
    path = repo / root_name / name
    branch = worktree_branch(name)
    vcs.add_worktree(repo, path, branch, base)
    return path, branch


def cleanup_worktree(vcs: VersionControl, repo: Path, path: Path) -> str | None:
    """
    Remove a worktree.

    Returns:
        None on success, otherwise the error text
    """
    try:
        vcs.remove_worktree(repo, path)
    except (ShipyardError, OSError) as e:
        logger.warning(f"Worktree cleanup failed for {path}: {e}")
        return str(e)
    return None
