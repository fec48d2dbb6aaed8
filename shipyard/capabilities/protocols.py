# shipyard/capabilities/protocols.py
"""
Interfaces for the external collaborators a run depends on.

The engine and scheduler only talk to these abstractions; production
implementations shell out to the agent CLI and git, and tests pass the
doubles from capabilities.fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from shipyard.models.jobs import Ticket


@dataclass
class AgentResult:
    """Outcome of one blocking agent invocation."""

    exit_code: int
    output: str
    cost_usd: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class Agent(ABC):
    """AI coding agent: prompt in, text (and working-copy side effects) out."""

    @abstractmethod
    def run(
        self,
        prompt: str,
        *,
        model: str,
        cwd: Path,
        max_turns: int | None = None,
        role: str = "builder",
    ) -> AgentResult:
        ...


class VersionControl(ABC):
    """Branches, worktrees and commits."""

    @abstractmethod
    def current_branch(self, cwd: Path) -> str:
        ...

    @abstractmethod
    def checkout_branch(self, cwd: Path, branch: str, base: str) -> None:
        """Switch to branch, creating it from base if needed."""

    @abstractmethod
    def add_worktree(self, repo: Path, path: Path, branch: str, base: str) -> None:
        ...

    @abstractmethod
    def remove_worktree(self, repo: Path, path: Path) -> None:
        ...

    @abstractmethod
    def commit_all(self, cwd: Path, message: str) -> bool:
        """Stage and commit everything. Returns False when there was nothing to commit."""

    @abstractmethod
    def push(self, cwd: Path, branch: str) -> None:
        ...

    @abstractmethod
    def diff(self, cwd: Path, base: str) -> str:
        ...

    @abstractmethod
    def head_sha(self, cwd: Path) -> str:
        ...


class IssueTracker(ABC):
    """Provider-agnostic ticket source and pull-request host."""

    @abstractmethod
    def fetch_ticket(self, number: int) -> Ticket:
        ...

    @abstractmethod
    def list_ready(self, label: str) -> list[Ticket]:
        ...

    @abstractmethod
    def comment(self, number: int, body: str) -> None:
        ...

    @abstractmethod
    def create_pr(self, branch: str, base: str, title: str, body: str) -> str:
        """Open a pull request and return its URL."""

    @abstractmethod
    def merge_pr(self, pr_url: str) -> None:
        ...

    @abstractmethod
    def pr_status(self, pr_url: str) -> str:
        ...


class CostReporter(ABC):
    """Spend ledger and remaining budget."""

    @abstractmethod
    def remaining_budget(self) -> float | None:
        """Remaining daily budget in USD, or None when unlimited."""

    @abstractmethod
    def record_spend(self, amount_usd: float, run_id: str | None = None, stage: str | None = None) -> None:
        ...
