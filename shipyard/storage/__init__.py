# shipyard/storage/__init__.py
"""File-backed storage: atomic writes, locks, the event log, state documents, artifacts and heartbeats."""

from shipyard.storage.artifacts import ArtifactStore
from shipyard.storage.atomic import StateLock, atomic_write_json, atomic_write_text
from shipyard.storage.events import EventLog
from shipyard.storage.heartbeat import Heartbeat, HeartbeatStore, HeartbeatWriter
from shipyard.storage.paths import HomePaths, RunPaths
from shipyard.storage.state_document import StateDocument, document_for, load_state

__all__ = [
    "ArtifactStore",
    "EventLog",
    "Heartbeat",
    "HeartbeatStore",
    "HeartbeatWriter",
    "HomePaths",
    "RunPaths",
    "StateDocument",
    "StateLock",
    "atomic_write_json",
    "atomic_write_text",
    "document_for",
    "load_state",
]
