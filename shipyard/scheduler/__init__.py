# shipyard/scheduler/__init__.py
"""Scheduler daemon: admission, spawning and reaping of pipeline runs."""

from shipyard.scheduler.daemon import Scheduler
from shipyard.scheduler.lifecycle import DaemonLifecycle, daemon_status, stop_daemon
from shipyard.scheduler.spawner import ProcessSpawner
from shipyard.scheduler.state import SchedulerState, SchedulerStore

__all__ = [
    "DaemonLifecycle",
    "ProcessSpawner",
    "Scheduler",
    "SchedulerState",
    "SchedulerStore",
    "daemon_status",
    "stop_daemon",
]
