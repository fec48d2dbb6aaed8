# shipyard/models/__init__.py
"""
Data models for shipyard.

Run state, templates, scheduler jobs and events. Everything persisted is a
pydantic model so documents are validated when read back.
"""

from shipyard.models.events import Event, EventType
from shipyard.models.jobs import CompletedJob, Job, QueueItem, Ticket, generate_job_id
from shipyard.models.runs import (
    TERMINAL_STATUSES,
    PipelineRun,
    RunStatus,
    StageRecord,
    StageStatus,
    can_transition,
    completion_from_records,
    generate_run_id,
)
from shipyard.models.templates import (
    STAGE_ORDER,
    GateMode,
    PipelineTemplate,
    StageConfig,
    StageSpec,
)

__all__ = [
    # Runs
    "PipelineRun",
    "RunStatus",
    "StageRecord",
    "StageStatus",
    "TERMINAL_STATUSES",
    "can_transition",
    "completion_from_records",
    "generate_run_id",
    # Templates
    "STAGE_ORDER",
    "GateMode",
    "PipelineTemplate",
    "StageConfig",
    "StageSpec",
    # Scheduler
    "Ticket",
    "QueueItem",
    "Job",
    "CompletedJob",
    "generate_job_id",
    # Events
    "Event",
    "EventType",
]
