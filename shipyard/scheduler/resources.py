# shipyard/scheduler/resources.py
"""
Admission ceiling from live resource telemetry.

The ceiling is the minimum of every active constraint: CPU headroom,
available memory, remaining budget, the externally assigned cap and the
absolute worker limit. Each constraint only ever lowers the ceiling.
"""

import logging
from dataclasses import dataclass

import psutil

from shipyard.config.schema import DaemonConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSnapshot:
    cpu_count: int
    load_ratio: float
    available_mem_gb: float


@dataclass(frozen=True)
class ResourceBudget:
    """Per-constraint ceilings; None means the constraint is inactive."""

    cpu: int
    memory: int
    budget: int | None
    external: int
    max_workers: int

    @property
    def ceiling(self) -> int:
        limits = [self.cpu, self.memory, self.external, self.max_workers]
        if self.budget is not None:
            limits.append(self.budget)
        return min(limits)

    @property
    def limiting(self) -> str:
        """Name of the binding constraint."""
        candidates = {
            "cpu": self.cpu,
            "memory": self.memory,
            "external": self.external,
            "max_workers": self.max_workers,
        }
        if self.budget is not None:
            candidates["budget"] = self.budget
        return min(candidates, key=lambda k: candidates[k])

    def as_dict(self) -> dict[str, int | None]:
        return {
            "cpu": self.cpu,
            "memory": self.memory,
            "budget": self.budget,
            "external": self.external,
            "max_workers": self.max_workers,
            "ceiling": self.ceiling,
        }


class ResourceMonitor:
    """Reads CPU, load and memory via psutil."""

    def snapshot(self) -> ResourceSnapshot:
        cpu_count = psutil.cpu_count(logical=True) or 1
        try:
            load1 = psutil.getloadavg()[0]
        except (AttributeError, OSError):
            load1 = psutil.cpu_percent(interval=None) / 100.0 * cpu_count
        available = psutil.virtual_memory().available / (1024**3)
        return ResourceSnapshot(
            cpu_count=cpu_count,
            load_ratio=round(load1 / cpu_count, 3),
            available_mem_gb=round(available, 2),
        )


def cpu_ceiling(snapshot: ResourceSnapshot, utilization: float) -> int:
    """Usable cores, scaled down as the machine gets busier."""
    base = max(1, int(snapshot.cpu_count * utilization))
    load_pct = snapshot.load_ratio * 100
    if load_pct > 95:
        return 1
    if load_pct > 85:
        base = base // 2
    elif load_pct > 70:
        base = base * 3 // 4
    return max(1, base)


def memory_ceiling(snapshot: ResourceSnapshot, worker_mem_gb: float) -> int:
    return max(1, int(snapshot.available_mem_gb // worker_mem_gb))


def budget_ceiling(remaining_usd: float | None, cost_per_job_usd: float) -> int | None:
    """Jobs the remaining budget can pay for; 0 stops admission, None is unlimited."""
    if remaining_usd is None:
        return None
    return max(0, int(remaining_usd // cost_per_job_usd))


def compute_ceiling(
    snapshot: ResourceSnapshot,
    config: DaemonConfig,
    remaining_budget: float | None,
    external_cap: int | None = None,
) -> ResourceBudget:
    return ResourceBudget(
        cpu=cpu_ceiling(snapshot, config.cpu_utilization),
        memory=memory_ceiling(snapshot, config.worker_mem_gb),
        budget=budget_ceiling(remaining_budget, config.cost_per_job_usd),
        external=config.max_parallel if external_cap is None else external_cap,
        max_workers=config.max_workers,
    )
