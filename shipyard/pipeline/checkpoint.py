# shipyard/pipeline/checkpoint.py
"""
Checkpoint management for pipeline recovery.

Before every stage attempt the full run state is snapshotted to
<state_dir>/checkpoints/<run_id>/. The state document stays the source of
truth for resume; checkpoints give an auditable trail of what the run
looked like going into each attempt.
"""

import json
import logging
import shutil
from pathlib import Path

from pydantic import BaseModel, ValidationError

from shipyard.models.runs import PipelineRun
from shipyard.storage.atomic import atomic_write_json
from shipyard.timeutil import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

STALE_HOURS = 24


class Checkpoint(BaseModel):
    seq: int
    stage: str
    attempt: int
    saved_at: str
    run: PipelineRun


class CheckpointManager:
    """
    Manages pipeline checkpoint persistence on disk.

    Files are named <seq>-<stage>-<attempt>.json so lexical order is
    save order.
    """

    def __init__(self, checkpoints_dir: Path) -> None:
        """
        Initialize checkpoint manager.

        Args:
            checkpoints_dir: Parent directory holding one folder per run
        """
        self._dir = Path(checkpoints_dir)

    def _run_dir(self, run_id: str) -> Path:
        return self._dir / run_id

    def save(self, run: PipelineRun, stage: str, attempt: int) -> Path:
        """
        Snapshot the run before an attempt at stage.

        Returns:
            Path of the checkpoint file
        """
        run_dir = self._run_dir(run.run_id)
        seq = len(self._files(run.run_id)) + 1
        path = run_dir / f"{seq:04d}-{stage}-{attempt}.json"
        atomic_write_json(
            path,
            {
                "seq": seq,
                "stage": stage,
                "attempt": attempt,
                "saved_at": to_iso(utc_now()),
                "run": run.model_dump(mode="json"),
            },
        )
        logger.debug(f"Saved checkpoint {path.name} for run {run.run_id}")
        return path

    def _files(self, run_id: str) -> list[Path]:
        run_dir = self._run_dir(run_id)
        if not run_dir.exists():
            return []
        return sorted(run_dir.glob("*.json"))

    def list(self, run_id: str) -> list[Checkpoint]:
        checkpoints = []
        for path in self._files(run_id):
            try:
                checkpoints.append(Checkpoint.model_validate(json.loads(path.read_text(encoding="utf-8"))))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping malformed checkpoint {path}: {e}")
        return checkpoints

    def load_latest(self, run_id: str) -> Checkpoint | None:
        """
        Load the most recent checkpoint for a run.

        Warns when it is older than STALE_HOURS.
        """
        checkpoints = self.list(run_id)
        if not checkpoints:
            logger.info(f"No checkpoint found for run {run_id}")
            return None
        latest = checkpoints[-1]
        try:
            age_hours = (utc_now() - parse_iso(latest.saved_at)).total_seconds() / 3600
            if age_hours > STALE_HOURS:
                logger.warning(
                    f"Checkpoint '{latest.stage}' is {age_hours:.0f}h old (>{STALE_HOURS}h)"
                )
        except ValueError:
            pass
        return latest

    def clear(self, run_id: str) -> None:
        """Remove all checkpoints for a run (after it completes)."""
        shutil.rmtree(self._run_dir(run_id), ignore_errors=True)
        logger.debug(f"Cleared checkpoints for run {run_id}")
