# shipyard/history.py
"""
Queries over the shared event log.

Duration and cost estimates use the lower median: for an even number of
samples the lower of the two middle elements is taken, not their mean, so
estimates round toward the faster and cheaper observation.
"""

import math
from collections.abc import Iterable, Sequence

from shipyard.models.events import Event, EventType
from shipyard.models.runs import StageRecord, StageStatus
from shipyard.timeutil import parse_iso

PIPELINE_HISTORY_LIMIT = 50


def lower_median(values: Sequence[float]) -> float | None:
    """Middle element of the sorted values; the lower middle on even counts."""
    if not values:
        return None
    ordered = sorted(values)
    return ordered[(len(ordered) - 1) // 2]


def percentile(values: Sequence[float], pct: float) -> float | None:
    """Nearest-rank percentile (no interpolation)."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


def stage_durations(events: Iterable[Event], stage: str) -> list[float]:
    return [
        float(e.duration_s)
        for e in events
        if e.type == EventType.STAGE_COMPLETED.value
        and e.stage == stage
        and e.duration_s is not None
    ]


def stage_costs(events: Iterable[Event], stage: str) -> list[float]:
    return [
        float(e.cost_usd)
        for e in events
        if e.type == EventType.STAGE_COMPLETED.value
        and e.stage == stage
        and e.cost_usd is not None
    ]


def pipeline_durations(events: Iterable[Event], limit: int = PIPELINE_HISTORY_LIMIT) -> list[float]:
    """Durations of the most recent completed runs, oldest first."""
    durations = [
        float(e.duration_s)
        for e in events
        if e.type == EventType.PIPELINE_COMPLETED.value and e.duration_s is not None
    ]
    return durations[-limit:]


def replay_stage_records(events: Iterable[Event], run_id: str) -> list[StageRecord]:
    """
    Rebuild a run's StageRecord history from its stage events.

    Each stage.started opens a record keyed by (stage, attempt); the matching
    stage.completed or stage.failed closes it. A record with no closing event
    stays RUNNING, which is what the state document shows after a crash.
    """
    records: list[StageRecord] = []
    open_records: dict[tuple[str, int], StageRecord] = {}

    for event in events:
        if event.run_id != run_id or event.stage is None:
            continue
        attempt = event.attempt or 1
        key = (event.stage, attempt)

        if event.type == EventType.STAGE_STARTED.value:
            record = StageRecord(
                stage=event.stage,
                attempt=attempt,
                status=StageStatus.RUNNING,
                started_at=parse_iso(event.ts),
            )
            records.append(record)
            open_records[key] = record
        elif event.type in (EventType.STAGE_COMPLETED.value, EventType.STAGE_FAILED.value):
            record = open_records.pop(key, None)
            if record is None:
                continue
            record.status = (
                StageStatus.COMPLETE
                if event.type == EventType.STAGE_COMPLETED.value
                else StageStatus.FAILED
            )
            record.ended_at = parse_iso(event.ts)
            record.duration_s = event.duration_s
            record.cost_usd = event.cost_usd or 0.0
            record.error = getattr(event, "error", None)
    return records
