# shipyard/capabilities/cost.py
"""Daily spend ledger (costs.jsonl in the shared home directory)."""

import json
import logging
import os
from pathlib import Path

from shipyard.capabilities.protocols import CostReporter
from shipyard.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)


class LedgerCostReporter(CostReporter):
    """
    Append-only spend ledger.

    remaining_budget() is the daily budget minus today's (UTC) recorded
    spend, never below zero, or None when no budget is configured.
    """

    def __init__(self, path: Path, daily_budget_usd: float | None = None) -> None:
        self.path = Path(path)
        self.daily_budget_usd = daily_budget_usd

    def spent_today(self) -> float:
        if not self.path.exists():
            return 0.0
        today = to_iso(utc_now())[:10]
        total = 0.0
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if str(entry.get("ts", "")).startswith(today):
                    total += float(entry.get("cost_usd", 0.0))
        return round(total, 6)

    def remaining_budget(self) -> float | None:
        if self.daily_budget_usd is None:
            return None
        return max(0.0, round(self.daily_budget_usd - self.spent_today(), 6))

    def record_spend(self, amount_usd: float, run_id: str | None = None, stage: str | None = None) -> None:
        if amount_usd <= 0:
            return
        entry = {"ts": to_iso(utc_now()), "cost_usd": amount_usd, "run_id": run_id, "stage": stage}
        line = (json.dumps(entry) + "\n").encode("utf-8")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            os.write(fd, line)
        finally:
            os.close(fd)
