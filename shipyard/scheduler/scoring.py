# shipyard/scheduler/scoring.py
"""
Triage score: which ready ticket should run first.

Additive points, clamped to 0..100:

    priority labels      urgent/p0 30, high/p1 20, normal/p2 10, low/p3 5
    age                  >7d 15, >3d 10, >1d 5
    complexity           short body and few file refs 20, medium 10, long 5
    dependencies         blocked -15 (-5 per extra blocker), blocks others +15
    type                 security/bug 10, feature/enhancement 5
    predicted cost       0 to -10
"""

import re
from datetime import datetime

from shipyard.models.jobs import Ticket

_PRIORITY = (
    (("urgent", "p0", "priority: critical", "critical"), 30),
    (("high", "p1", "priority: high"), 20),
    (("normal", "p2", "priority: medium", "medium"), 10),
    (("low", "p3", "priority: low"), 5),
)
_FILE_REF = re.compile(r"[\w./-]+\.(?:py|ts|tsx|js|jsx|go|rs|rb|java|kt|sh|md|json|ya?ml|toml|c|h|cpp)\b")
_BLOCKED_BY = re.compile(r"(?:blocked by|depends on)\s+#(\d+)", re.IGNORECASE)


def blockers(ticket: Ticket) -> list[int]:
    """Explicit blockers plus 'blocked by #N' / 'depends on #N' references in the body."""
    found = list(ticket.blocked_by)
    for ref in _BLOCKED_BY.findall(ticket.body or ""):
        if int(ref) not in found:
            found.append(int(ref))
    return found


def _priority_points(labels: list[str]) -> int:
    lowered = {label.lower() for label in labels}
    for names, points in _PRIORITY:
        if lowered.intersection(names):
            return points
    return 0


def _age_points(created_at: datetime, now: datetime) -> int:
    days = (now - created_at).total_seconds() / 86400
    if days > 7:
        return 15
    if days > 3:
        return 10
    if days > 1:
        return 5
    return 0


def _complexity_points(body: str) -> int:
    file_refs = len(set(_FILE_REF.findall(body or "")))
    length = len(body or "")
    if length < 200 and file_refs < 3:
        return 20
    if length < 1000:
        return 10
    if file_refs < 5:
        return 5
    return 0


def _dependency_points(ticket: Ticket) -> int:
    blocking = blockers(ticket)
    if blocking:
        return -15 - 5 * (len(blocking) - 1)
    if ticket.blocks:
        return 15
    return 0


def _type_points(labels: list[str]) -> int:
    lowered = {label.lower() for label in labels}
    if lowered & {"security", "bug"}:
        return 10
    if lowered & {"feature", "enhancement"}:
        return 5
    return 0


def _cost_points(predicted_cost: float | None, cost_cap: float) -> int:
    if not predicted_cost or cost_cap <= 0:
        return 0
    return -min(10, round(predicted_cost / cost_cap * 10))


def triage_score(
    ticket: Ticket,
    now: datetime,
    predicted_cost: float | None = None,
    cost_cap: float = 5.0,
) -> int:
    score = (
        _priority_points(ticket.labels)
        + _age_points(ticket.created_at, now)
        + _complexity_points(ticket.body)
        + _dependency_points(ticket)
        + _type_points(ticket.labels)
        + _cost_points(predicted_cost, cost_cap)
    )
    return max(0, min(100, score))
