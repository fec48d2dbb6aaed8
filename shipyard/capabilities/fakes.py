# shipyard/capabilities/fakes.py
"""
In-memory test doubles for every capability.

They record calls so tests can assert on them, and never touch the network,
git or an agent binary.
"""

from collections.abc import Callable
from pathlib import Path

from shipyard.capabilities.protocols import (
    Agent,
    AgentResult,
    CostReporter,
    IssueTracker,
    VersionControl,
)
from shipyard.errors import CapabilityError
from shipyard.models.jobs import Ticket

AgentScript = Callable[[str, str, Path], AgentResult]


class FakeAgent(Agent):
    """
    Scripted agent.

    Responses are consumed in order; once exhausted, default is returned.
    A callable script receives (prompt, role, cwd) and may write files.
    """

    def __init__(
        self,
        responses: list[AgentResult] | None = None,
        default: AgentResult | None = None,
        script: AgentScript | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.default = default or AgentResult(
            exit_code=0, output="# Plan\n\n## Steps\n- [ ] implement\n\n## Definition of Done\n- [ ] tests pass\n"
        )
        self.script = script
        self.calls: list[dict] = []

    def run(self, prompt, *, model, cwd, max_turns=None, role="builder") -> AgentResult:
        self.calls.append({"prompt": prompt, "model": model, "cwd": cwd, "role": role})
        if self.script is not None:
            return self.script(prompt, role, Path(cwd))
        if self.responses:
            return self.responses.pop(0)
        return self.default


class FakeVCS(VersionControl):
    """Records git operations; commits succeed unless commit_results says otherwise."""

    def __init__(
        self,
        branch: str = "main",
        diff_text: str = "",
        commit_results: list[bool] | None = None,
        fail_remove_worktree: bool = False,
    ) -> None:
        self.branch = branch
        self.diff_text = diff_text
        self.commit_results = list(commit_results or [])
        self.fail_remove_worktree = fail_remove_worktree
        self.commits: list[str] = []
        self.pushed: list[str] = []
        self.worktrees: dict[Path, str] = {}
        self.removed_worktrees: list[Path] = []

    def current_branch(self, cwd: Path) -> str:
        return self.branch

    def checkout_branch(self, cwd: Path, branch: str, base: str) -> None:
        self.branch = branch

    def add_worktree(self, repo: Path, path: Path, branch: str, base: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)
        self.worktrees[Path(path)] = branch

    def remove_worktree(self, repo: Path, path: Path) -> None:
        if self.fail_remove_worktree:
            raise CapabilityError(f"cannot remove worktree {path}")
        self.worktrees.pop(Path(path), None)
        self.removed_worktrees.append(Path(path))

    def commit_all(self, cwd: Path, message: str) -> bool:
        committed = self.commit_results.pop(0) if self.commit_results else True
        if committed:
            self.commits.append(message)
        return committed

    def push(self, cwd: Path, branch: str) -> None:
        self.pushed.append(branch)

    def diff(self, cwd: Path, base: str) -> str:
        return self.diff_text

    def head_sha(self, cwd: Path) -> str:
        return f"{len(self.commits):040x}"


class FakeTracker(IssueTracker):
    """Tickets held in a dict."""

    def __init__(self, tickets: list[Ticket] | None = None) -> None:
        self.tickets = {t.number: t for t in tickets or []}
        self.comments: list[tuple[int, str]] = []
        self.prs: dict[str, str] = {}
        self.list_calls = 0

    def fetch_ticket(self, number: int) -> Ticket:
        if number not in self.tickets:
            raise CapabilityError(f"ticket #{number} not found")
        return self.tickets[number]

    def list_ready(self, label: str) -> list[Ticket]:
        self.list_calls += 1
        return [t for t in self.tickets.values() if t.state == "open" and label in t.labels]

    def comment(self, number: int, body: str) -> None:
        self.comments.append((number, body))

    def create_pr(self, branch: str, base: str, title: str, body: str) -> str:
        url = f"https://example.invalid/pr/{len(self.prs) + 1}"
        self.prs[url] = "open"
        return url

    def merge_pr(self, pr_url: str) -> None:
        self.prs[pr_url] = "merged"

    def pr_status(self, pr_url: str) -> str:
        return self.prs.get(pr_url, "unknown")


class FakeCostReporter(CostReporter):
    """Fixed remaining budget; fail=True simulates an unreachable reporter."""

    def __init__(self, remaining: float | None = None, fail: bool = False) -> None:
        self.remaining = remaining
        self.fail = fail
        self.spend: list[float] = []

    def remaining_budget(self) -> float | None:
        if self.fail:
            raise CapabilityError("cost reporter unavailable", transient=True)
        return self.remaining

    def record_spend(self, amount_usd: float, run_id: str | None = None, stage: str | None = None) -> None:
        self.spend.append(amount_usd)
