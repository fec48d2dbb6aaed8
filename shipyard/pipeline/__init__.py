# shipyard/pipeline/__init__.py
"""
Pipeline engine, stage runner and checkpoint management.

Exports:
    - PipelineEngine: Runs, resumes, approves and aborts one project's run
    - StageRunner: Executes one stage attempt and captures its failure
    - CheckpointManager: Per-attempt snapshots of the run
"""

from shipyard.pipeline.checkpoint import CheckpointManager
from shipyard.pipeline.engine import PipelineEngine, StartRequest, exit_code_for
from shipyard.pipeline.runner import StageRunner

__all__ = ["CheckpointManager", "PipelineEngine", "StageRunner", "StartRequest", "exit_code_for"]
