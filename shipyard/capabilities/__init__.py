# shipyard/capabilities/__init__.py
"""
Injectable external collaborators.

Capabilities bundles one implementation of each interface; the CLI builds
the production set with build_capabilities() and tests pass fakes.
"""

from dataclasses import dataclass

from shipyard.capabilities.agent import ClaudeAgent
from shipyard.capabilities.cost import LedgerCostReporter
from shipyard.capabilities.protocols import (
    Agent,
    AgentResult,
    CostReporter,
    IssueTracker,
    VersionControl,
)
from shipyard.capabilities.tracker import FileTracker, NullTracker
from shipyard.capabilities.vcs import GitVCS
from shipyard.config.schema import ShipyardConfig
from shipyard.storage.paths import HomePaths


@dataclass
class Capabilities:
    agent: Agent
    vcs: VersionControl
    tracker: IssueTracker
    cost: CostReporter


def build_capabilities(config: ShipyardConfig, home: HomePaths) -> Capabilities:
    """Production capabilities: agent CLI, git, file tracker, spend ledger."""
    tracker: IssueTracker = (
        FileTracker(home.tickets_dir) if home.tickets_dir.exists() else NullTracker()
    )
    return Capabilities(
        agent=ClaudeAgent(
            command=config.agent.command,
            timeout_s=config.agent.timeout_s,
            default_max_turns=config.agent.max_turns,
            extra_args=config.agent.extra_args,
        ),
        vcs=GitVCS(),
        tracker=tracker,
        cost=LedgerCostReporter(home.costs_file, config.budget.daily_budget_usd),
    )


__all__ = [
    "Agent",
    "AgentResult",
    "Capabilities",
    "ClaudeAgent",
    "CostReporter",
    "FileTracker",
    "GitVCS",
    "IssueTracker",
    "LedgerCostReporter",
    "NullTracker",
    "VersionControl",
    "build_capabilities",
]
