# shipyard/pipeline/stages/__init__.py
"""Pipeline stage implementations."""

from shipyard.pipeline.stages.base import RunContext, Stage, StageResult, run_shell
from shipyard.pipeline.stages.build import BuildStage
from shipyard.pipeline.stages.delivery import CommandStage, MergeStage, SubmitStage
from shipyard.pipeline.stages.intake import IntakeStage
from shipyard.pipeline.stages.plan import PlanStage
from shipyard.pipeline.stages.review import ReviewStage
from shipyard.pipeline.stages.test import TestStage
from shipyard.storage import artifacts as names


def create_stages() -> dict[str, Stage]:
    """One instance of every stage, keyed by stage id."""
    stages: list[Stage] = [
        IntakeStage(),
        PlanStage(),
        BuildStage(),
        TestStage(),
        ReviewStage(),
        SubmitStage(),
        MergeStage(),
        CommandStage("deploy", names.DEPLOY),
        CommandStage("validate", names.VALIDATE),
        CommandStage("monitor", names.MONITOR),
    ]
    return {s.name: s for s in stages}


__all__ = [
    "BuildStage",
    "CommandStage",
    "IntakeStage",
    "MergeStage",
    "PlanStage",
    "ReviewStage",
    "RunContext",
    "Stage",
    "StageResult",
    "SubmitStage",
    "TestStage",
    "create_stages",
    "run_shell",
]
