# shipyard/scheduler/timeouts.py
"""
Adaptive heartbeat timeouts and poll intervals.

A stage that historically takes ten minutes must not be reaped after two, so
the heartbeat timeout follows the stage's own history: 1.5 x its p90
duration (never below the floor) once there are enough samples, a per-stage
default before that, and the global default for unknown stages.
"""

from shipyard.config.schema import DaemonConfig
from shipyard.history import percentile, stage_durations
from shipyard.models.events import Event

MIN_SAMPLES = 3
P90_MULTIPLIER = 1.5


class TimeoutPolicy:
    def __init__(self, config: DaemonConfig, events: list[Event] | None = None) -> None:
        self.config = config
        self._learned: dict[str, float] = {}
        if events:
            self.learn(events)

    def learn(self, events: list[Event]) -> None:
        stages = {e.stage for e in events if e.stage}
        learned = {}
        for stage in stages:
            durations = stage_durations(events, stage)
            if len(durations) >= MIN_SAMPLES:
                p90 = percentile(durations, 90)
                learned[stage] = max(float(self.config.heartbeat_floor_s), P90_MULTIPLIER * p90)
        self._learned = learned

    def heartbeat_timeout(self, stage: str | None) -> float:
        if stage and stage in self._learned:
            return self._learned[stage]
        if stage and stage in self.config.stage_timeouts:
            return float(self.config.stage_timeouts[stage])
        return float(self.config.heartbeat_timeout_s)


def poll_interval(config: DaemonConfig, queue_depth: int, empty_cycles: int) -> int:
    """Poll faster while work is queued, slower after repeated empty cycles."""
    if queue_depth > 0:
        return config.busy_poll_interval_s
    if empty_cycles >= config.idle_cycles_before_backoff:
        return config.idle_poll_interval_s
    return config.poll_interval_s
