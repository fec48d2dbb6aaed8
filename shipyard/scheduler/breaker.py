# shipyard/scheduler/breaker.py
"""
Spawn circuit breaker.

closed --(threshold failures within window)--> open
open   --(cooldown elapsed)--> half_open (one trial spawn allowed)
half_open --success--> closed, --failure--> open

Reaping continues while the breaker is open; only new spawns stop.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from shipyard.models.events import EventType

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerSnapshot(BaseModel):
    """Persisted breaker state (part of the scheduler state document)."""

    model_config = ConfigDict(extra="ignore")

    state: BreakerState = BreakerState.CLOSED
    failures: list[datetime] = Field(default_factory=list)
    opened_at: datetime | None = None
    trial_in_flight: bool = False


class CircuitBreaker:
    def __init__(
        self,
        snapshot: BreakerSnapshot,
        threshold: int,
        window_s: float,
        cooldown_s: float,
        emit: Callable[..., None] | None = None,
    ) -> None:
        self.snap = snapshot
        self.threshold = threshold
        self.window = timedelta(seconds=window_s)
        self.cooldown = timedelta(seconds=cooldown_s)
        self._emit = emit or (lambda *a, **k: None)

    @property
    def state(self) -> BreakerState:
        return self.snap.state

    def allow(self, now: datetime) -> bool:
        """True when a spawn may be attempted now."""
        if self.snap.state == BreakerState.CLOSED:
            return True
        if self.snap.state == BreakerState.OPEN:
            if self.snap.opened_at is not None and now - self.snap.opened_at >= self.cooldown:
                self.snap.state = BreakerState.HALF_OPEN
                self.snap.trial_in_flight = False
                self._emit(EventType.BREAKER_HALF_OPEN)
                logger.info("Spawn breaker half-open: allowing one trial spawn")
            else:
                return False
        # HALF_OPEN: exactly one trial
        if self.snap.trial_in_flight:
            return False
        self.snap.trial_in_flight = True
        return True

    def record_success(self, now: datetime) -> None:
        if self.snap.state != BreakerState.CLOSED:
            logger.info("Spawn breaker closed")
            self._emit(EventType.BREAKER_CLOSED)
        self.snap.state = BreakerState.CLOSED
        self.snap.failures = []
        self.snap.opened_at = None
        self.snap.trial_in_flight = False

    def record_failure(self, now: datetime) -> None:
        if self.snap.state == BreakerState.HALF_OPEN:
            self._open(now, "trial spawn failed")
            return
        self.snap.failures = [t for t in self.snap.failures if now - t <= self.window] + [now]
        if len(self.snap.failures) >= self.threshold:
            self._open(now, f"{len(self.snap.failures)} spawn failures")

    def _open(self, now: datetime, reason: str) -> None:
        self.snap.state = BreakerState.OPEN
        self.snap.opened_at = now
        self.snap.trial_in_flight = False
        self.snap.failures = []
        logger.warning(f"Spawn breaker opened ({reason}); pausing spawns for {self.cooldown.total_seconds():.0f}s")
        self._emit(EventType.BREAKER_OPENED, reason=reason, cooldown_s=self.cooldown.total_seconds())
