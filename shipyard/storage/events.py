# shipyard/storage/events.py
"""
Append-only JSONL event log.

Many processes append to the same file: every run, and the scheduler. Each
record is encoded to one line and written with a single os.write on an
O_APPEND descriptor, so concurrent appends never interleave. The file is
never truncated or rewritten. Cross-process ordering is only as good as the
wall-clock timestamps.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from shipyard.models.events import Event, EventType
from shipyard.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)


class EventLog:
    """Shared event log at a fixed path."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def emit(self, event_type: EventType | str, **fields: Any) -> dict[str, Any]:
        """
        Append one event.

        None-valued fields are dropped so records stay compact.

        Returns:
            The record as written
        """
        type_value = event_type.value if isinstance(event_type, EventType) else event_type
        record: dict[str, Any] = {"ts": to_iso(utc_now()), "type": type_value}
        record.update({k: v for k, v in fields.items() if v is not None})
        line = (json.dumps(record, separators=(",", ":"), default=str) + "\n").encode("utf-8")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            os.write(fd, line)
        finally:
            os.close(fd)
        return record

    def read(
        self,
        types: Iterable[EventType | str] | None = None,
        run_id: str | None = None,
    ) -> list[Event]:
        """
        Read and validate events, optionally filtered.

        Malformed lines are skipped with a warning rather than coerced.
        A missing log reads as empty (and is not created).
        """
        wanted = (
            {t.value if isinstance(t, EventType) else t for t in types} if types else None
        )
        if not self.path.exists():
            return []

        events: list[Event] = []
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = Event.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning(f"Skipping malformed event at {self.path}:{lineno}: {e}")
                    continue
                if wanted is not None and event.type not in wanted:
                    continue
                if run_id is not None and event.run_id != run_id:
                    continue
                events.append(event)
        return events
