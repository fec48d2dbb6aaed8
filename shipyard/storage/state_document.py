# shipyard/storage/state_document.py
"""
Per-run state document.

A YAML header between '---' lines holds the PipelineRun model; below it an
append-only '## Log' section holds human-readable lines. Resume trusts this
file over any in-memory state. Writes are atomic (temp + rename) and the
caller must own the document's StateLock.
"""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from shipyard.errors import StateDocumentError
from shipyard.models.runs import PipelineRun, RunStatus
from shipyard.storage.atomic import StateLock, atomic_write_text
from shipyard.storage.paths import RunPaths
from shipyard.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)

_FENCE = "---"
_LOG_HEADING = "## Log"


def render_document(run: PipelineRun, log_lines: list[str]) -> str:
    header = yaml.safe_dump(
        run.model_dump(mode="json"), default_flow_style=False, sort_keys=False
    )
    body = "\n".join(f"- {line}" for line in log_lines)
    return f"{_FENCE}\n{header}{_FENCE}\n\n{_LOG_HEADING}\n\n{body}\n" if body else (
        f"{_FENCE}\n{header}{_FENCE}\n\n{_LOG_HEADING}\n\n"
    )


def parse_document(text: str, source: str = "<state>") -> tuple[PipelineRun, list[str]]:
    """
    Split a state document into (run, log_lines).

    Raises:
        StateDocumentError: Missing fences, bad YAML or a header that fails validation
    """
    if not text.startswith(_FENCE + "\n"):
        raise StateDocumentError(f"{source}: missing '---' header fence")
    end = text.find(f"\n{_FENCE}\n", len(_FENCE))
    if end == -1:
        raise StateDocumentError(f"{source}: unterminated header")

    raw_header = text[len(_FENCE) + 1 : end + 1]
    try:
        data = yaml.safe_load(raw_header)
    except yaml.YAMLError as e:
        raise StateDocumentError(f"{source}: header is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise StateDocumentError(f"{source}: header must be a mapping")

    try:
        run = PipelineRun.model_validate(data)
    except ValidationError as e:
        raise StateDocumentError(f"{source}: invalid run header: {e}") from e

    rest = text[end + len(_FENCE) + 2 :]
    log_lines = [line[2:] for line in rest.splitlines() if line.startswith("- ")]
    return run, log_lines


class StateDocument:
    """Reader/writer for one project's state document."""

    def __init__(self, paths: RunPaths) -> None:
        self.paths = paths
        self.path = paths.state_file
        self.lock = StateLock(paths.lock_file, purpose="pipeline")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> PipelineRun:
        run, _ = self.load_with_log()
        return run

    def load_with_log(self) -> tuple[PipelineRun, list[str]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise StateDocumentError(f"No state document at {self.path}") from e
        return parse_document(text, str(self.path))

    def read_log(self) -> list[str]:
        if not self.exists():
            return []
        return self.load_with_log()[1]

    def save(self, run: PipelineRun, log_line: str | None = None) -> None:
        """Rewrite the header (and optionally append one log line) atomically."""
        log_lines: list[str] = []
        if self.exists():
            try:
                _, log_lines = self.load_with_log()
            except StateDocumentError:
                logger.warning(f"Replacing unreadable state document {self.path}")
        if log_line:
            log_lines.append(f"{to_iso(utc_now())} {log_line}")
        run.updated_at = utc_now()
        atomic_write_text(self.path, render_document(run, log_lines))

    def force_fail(
        self, reason: str, lock_timeout: float = 5.0, force: bool = True
    ) -> PipelineRun | None:
        """
        Mark the run failed from outside its process (scheduler reap path).

        The run's own lock is reclaimed if its holder is dead; with force the
        lock is broken after lock_timeout even if the holder looks alive.

        Returns:
            The updated run, or None if there is no readable document
        """
        if not self.exists():
            return None
        with self.lock.held(timeout=lock_timeout, force=force):
            try:
                run = self.load()
            except StateDocumentError as e:
                logger.error(f"Cannot force-fail unreadable state document: {e}")
                return None
            if run.is_terminal:
                return run
            run.transition(RunStatus.FAILED)
            run.error = reason
            self.save(run, f"run force-marked failed: {reason}")
            logger.warning(f"Run {run.run_id} force-marked failed: {reason}")
            return run

    def request_abort(self) -> None:
        self.paths.abort_flag.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.paths.abort_flag, to_iso(utc_now()) + "\n")

    def abort_requested(self) -> bool:
        return self.paths.abort_flag.exists()

    def clear_abort(self) -> None:
        try:
            self.paths.abort_flag.unlink()
        except FileNotFoundError:
            pass


def load_state(path: Path) -> PipelineRun:
    """Read a state document by path (used by the scheduler)."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise StateDocumentError(f"No state document at {path}") from e
    return parse_document(text, str(path))[0]


def document_for(state_file: Path) -> StateDocument:
    """StateDocument for a state file path (<project>/<state_dir>/pipeline-state.md)."""
    state_file = Path(state_file)
    return StateDocument(RunPaths(state_file.parent.parent, state_file.parent.name))
