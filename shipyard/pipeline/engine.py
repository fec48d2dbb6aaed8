# shipyard/pipeline/engine.py
"""
Pipeline Engine.

Drives one run through its template: one stage at a time, a checkpoint
before every attempt, the state document rewritten after every change.
The engine holds the run's exclusive state lock for as long as it executes,
so resume, approve and abort from another process see a live holder.

Status machine: pending -> running -> {paused_for_gate, complete, failed,
aborted}. "interrupted" is never observed directly: resume infers it from a
run left in "running" by a dead lock holder.
"""

import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from shipyard.capabilities import Capabilities
from shipyard.config.schema import ShipyardConfig
from shipyard.errors import ConfigError
from shipyard.models.events import EventType
from shipyard.models.runs import PipelineRun, RunStatus, StageStatus
from shipyard.models.templates import GateMode, PipelineTemplate, StageSpec
from shipyard.pipeline.checkpoint import CheckpointManager
from shipyard.pipeline.classify import (
    ConvergenceTracker,
    classify_error,
    should_retry,
    tail_lines,
)
from shipyard.pipeline.estimator import estimate, render_estimate
from shipyard.pipeline.runner import StageRunner
from shipyard.pipeline.stages.base import RunContext, StageResult
from shipyard.pipeline.templates import default_search_dirs, load_template
from shipyard.pipeline.worktree import cleanup_worktree, create_worktree, worktree_name
from shipyard.storage.artifacts import ArtifactStore
from shipyard.storage.events import EventLog
from shipyard.storage.heartbeat import HeartbeatStore, HeartbeatWriter
from shipyard.storage.paths import HomePaths, RunPaths
from shipyard.storage.state_document import StateDocument

logger = logging.getLogger(__name__)

JOB_ENV = "SHIPYARD_JOB_ID"
BUDGET_GATE = "budget"
HEAL_FEEDBACK_LINES = 30
STUCK_HINT = (
    "The same error has now repeated several times in a row. "
    "Do not repeat the previous fix; try a different approach."
)

EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.COMPLETE: 0,
    RunStatus.FAILED: 1,
    RunStatus.PAUSED_FOR_GATE: 2,
    RunStatus.ABORTED: 3,
}


def exit_code_for(status: RunStatus) -> int:
    return EXIT_CODES.get(status, 1)


@dataclass
class StartRequest:
    """Inputs for a new run, as given on the command line."""

    goal: str = ""
    issue: int | None = None
    template: str | None = None
    test_cmd: str | None = None
    model: str | None = None
    skip_gates: bool = False
    worktree: bool = False
    worktree_name: str | None = None
    branch: str | None = None
    self_heal: int | None = None
    base: str | None = None
    ignore_budget: bool = False
    job_id: str | None = None


class PipelineEngine:
    """
    Runs, resumes, approves and aborts the pipeline of one project directory.

    All collaborators are injected: capabilities, the stage runner and the
    sleep function (stage retry backoff, monitor intervals).
    """

    def __init__(
        self,
        project_dir: Path,
        config: ShipyardConfig,
        caps: Capabilities,
        home: HomePaths,
        runner: StageRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.config = config
        self.caps = caps
        self.home = home
        self.runner = runner or StageRunner()
        self._sleep = sleep

        self.paths = RunPaths(self.project_dir, config.pipeline.state_dir_name)
        self.doc = StateDocument(self.paths)
        self.events = EventLog(home.events_file)
        self.checkpoints = CheckpointManager(self.paths.checkpoints_dir)
        self.artifacts = ArtifactStore(self.paths.artifacts_dir)
        self.heartbeats = HeartbeatStore(home.heartbeats_dir)
        self._heartbeat: HeartbeatWriter | None = None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def resolve_template(self, name: str | None) -> PipelineTemplate:
        search = default_search_dirs(
            self.project_dir, self.config.pipeline.state_dir_name, self.config.pipeline.template_dirs
        )
        return load_template(name or self.config.pipeline.default_template, search)

    def validate(self, request: StartRequest) -> PipelineTemplate:
        """
        Check a start request before anything is written.

        Raises:
            ConfigError: Missing goal, bad numbers or an unknown template
        """
        if not request.goal.strip() and request.issue is None:
            raise ConfigError("A goal or an issue number is required")
        if request.issue is not None and request.issue <= 0:
            raise ConfigError(f"Invalid issue number: {request.issue}")
        if request.self_heal is not None and request.self_heal < 0:
            raise ConfigError("The self-heal budget cannot be negative")
        return self.resolve_template(request.template)

    def dry_run(self, request: StartRequest) -> str:
        """Render duration/cost estimates without touching anything."""
        template = self.validate(request)
        model = request.model or template.model or self.config.pipeline.model
        goal = request.goal.strip() or (f"issue #{request.issue}" if request.issue else "")
        return render_estimate(estimate(template, self.events.read(), model, goal))

    def start(self, request: StartRequest) -> PipelineRun:
        """
        Start a new run and execute it until it stops.

        Raises:
            ConfigError: Invalid request, or an unfinished run already exists
            LockHeldError: Another live process owns this project's run
        """
        template = self.validate(request)
        self.doc.lock.acquire()
        try:
            if self.doc.exists():
                previous = self.doc.load()
                if not previous.is_terminal:
                    raise ConfigError(
                        f"Run {previous.run_id} is {previous.status.value}; resume or abort it first"
                    )
                self._archive(previous)
            self.doc.clear_abort()

            workdir = self.project_dir
            worktree: Path | None = None
            branch = request.branch
            if request.worktree:
                name = worktree_name(request.goal, request.issue, request.worktree_name)
                worktree, branch = create_worktree(
                    self.caps.vcs,
                    self.project_dir,
                    self.config.pipeline.worktree_dir_name,
                    name,
                    request.base or self.config.pipeline.base_branch,
                )
                workdir = worktree

            run = PipelineRun(
                goal=request.goal.strip(),
                issue=request.issue,
                template=template,
                model=request.model or template.model or self.config.pipeline.model,
                test_cmd=request.test_cmd,
                base_branch=request.base or self.config.pipeline.base_branch,
                branch=branch,
                worktree=str(worktree) if worktree else None,
                workdir=str(workdir),
                self_heal_limit=(
                    request.self_heal
                    if request.self_heal is not None
                    else self.config.pipeline.self_heal_retries
                ),
                skip_gates=request.skip_gates,
                ignore_budget=request.ignore_budget,
                job_id=request.job_id or os.environ.get(JOB_ENV),
            )
            run.init_stage_map()
            if worktree:
                self._emit(run, EventType.WORKTREE_CREATED, path=str(worktree), branch=branch)
            run.transition(RunStatus.RUNNING)
            self.doc.save(
                run,
                f"run {run.run_id} started with template '{template.name}': "
                f"{run.goal or f'issue #{run.issue}'}",
            )
            self._emit(run, EventType.PIPELINE_STARTED, template=template.name, goal=run.goal or None)
            logger.info(f"Started run {run.run_id} ({template.name})")
            return self._execute(run)
        finally:
            self.doc.lock.release()

    def resume(self, job_id: str | None = None) -> PipelineRun:
        """
        Continue the persisted run from its first incomplete stage.

        job_id (set by the scheduler) replaces the run's job id so the
        heartbeat is written under the new job.

        A run still marked running whose lock holder is gone was interrupted;
        that is recorded before it continues. A pending gate is re-checked,
        never assumed approved.

        Raises:
            ConfigError: No run, or the run is already terminal
            LockHeldError: The run is still executing in a live process
        """
        self.doc.lock.acquire()
        try:
            run = self._load_existing()
            if run.is_terminal:
                raise ConfigError(f"Run {run.run_id} is {run.status.value}; nothing to resume")

            if run.status == RunStatus.PAUSED_FOR_GATE:
                gate = run.pending_gate
                if gate and gate != BUDGET_GATE and gate not in run.approved_gates:
                    logger.info(f"Run {run.run_id} is waiting for approval of '{gate}'")
                    return run
                # The budget gate is re-evaluated by the stage loop
                run.pending_gate = None

            if run.status == RunStatus.RUNNING:
                run.transition(RunStatus.INTERRUPTED)
                self.doc.save(run, f"previous process exited during {run.current_stage or 'startup'}; run interrupted")
                self._emit(run, EventType.PIPELINE_INTERRUPTED, stage=run.current_stage)
                logger.warning(f"Run {run.run_id} was interrupted during {run.current_stage}")

            latest = self.checkpoints.load_latest(run.run_id)
            if latest is not None:
                logger.info(f"Last checkpoint #{latest.seq}: before {latest.stage} attempt {latest.attempt}")

            job_id = job_id or os.environ.get(JOB_ENV)
            if job_id:
                run.job_id = job_id
            run.transition(RunStatus.RUNNING)
            self.doc.save(run, "run resumed")
            self._emit(run, EventType.PIPELINE_RESUMED, stage=run.current_stage)
            return self._execute(run)
        finally:
            self.doc.lock.release()

    def approve(self, gate: str | None = None) -> PipelineRun:
        """
        Approve the pending gate and continue the run.

        Approving the budget gate lets the run continue past the daily budget.
        """
        self.doc.lock.acquire()
        try:
            run = self._load_existing()
            if run.status != RunStatus.PAUSED_FOR_GATE or not run.pending_gate:
                raise ConfigError(f"Run {run.run_id} is {run.status.value}, not waiting for approval")
            gate = gate or run.pending_gate
            if gate != run.pending_gate:
                raise ConfigError(f"Run is waiting for '{run.pending_gate}', not '{gate}'")

            if gate == BUDGET_GATE:
                run.ignore_budget = True
            else:
                run.approved_gates.append(gate)
            run.pending_gate = None
            run.transition(RunStatus.RUNNING)
            self.doc.save(run, f"gate '{gate}' approved")
            self._emit(run, EventType.PIPELINE_APPROVED, gate=gate)
            return self._execute(run)
        finally:
            self.doc.lock.release()

    def abort(self, reason: str = "aborted by operator") -> PipelineRun:
        """
        Abort the run.

        If a live process is executing it, an abort request is left for the
        engine to honour before its next stage (in-flight agent calls are not
        killed). Otherwise the run is marked aborted directly. Complete,
        aborted and failed runs are returned unchanged.
        """
        run = self._load_existing()
        if run.is_terminal:
            return run

        if self.doc.lock.is_held_by_live_process():
            self.doc.request_abort()
            logger.info(f"Abort requested for run {run.run_id}; it stops before its next stage")
            return run

        with self.doc.lock.held(timeout=self.config.daemon.lock_timeout_s):
            run = self._load_existing()
            if run.is_terminal:
                return run
            return self._mark_aborted(run, reason)

    def status(self) -> PipelineRun | None:
        return self.doc.load() if self.doc.exists() else None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, run: PipelineRun) -> PipelineRun:
        ctx = RunContext(
            run=run,
            project_dir=self.project_dir,
            workdir=Path(run.workdir or self.project_dir),
            artifacts=self.artifacts,
            caps=self.caps,
            config=self.config,
            report=self._report,
            emit=lambda event_type, **fields: self._emit(run, event_type, **fields),
            sleep=self._sleep,
        )
        self._start_heartbeat(run)
        try:
            return self._loop(run, ctx)
        finally:
            self._stop_heartbeat()

    def _loop(self, run: PipelineRun, ctx: RunContext) -> PipelineRun:
        while True:
            gate = self._unapproved_gate(run)
            if gate is not None:
                return self._pause(run, gate)

            spec = run.next_stage()
            if spec is None:
                return self._complete(run)

            if self.doc.abort_requested():
                return self._mark_aborted(run, "abort requested")

            if self._budget_exhausted(run):
                return self._pause(run, BUDGET_GATE)

            result = self._run_with_retries(run, ctx, spec)
            if not result.ok and self._can_self_heal(run, spec):
                result = self._self_heal(run, ctx, result)

            if not result.ok:
                if self.doc.abort_requested():
                    return self._mark_aborted(run, "abort requested")
                return self._fail(run, run.current_stage or spec.id, result)

    def _unapproved_gate(self, run: PipelineRun) -> str | None:
        if run.skip_gates:
            return None
        for spec in run.enabled_stages():
            if (
                spec.gate == GateMode.APPROVE
                and run.stages.get(spec.id) == StageStatus.COMPLETE
                and spec.id not in run.approved_gates
            ):
                return spec.id
        return None

    def _run_with_retries(self, run: PipelineRun, ctx: RunContext, spec: StageSpec) -> StageResult:
        retries = spec.config.retries
        previous = None
        retry = 0
        while True:
            result = self._attempt(run, ctx, spec.id)
            if result.ok or retry >= retries:
                return result

            error_class = classify_error(result.error or result.output)
            if not should_retry(error_class, previous):
                logger.info(f"Not retrying {spec.id}: {error_class.value} error")
                return result
            previous = error_class
            retry += 1
            delay = min(2**retry, self.config.pipeline.stage_retry_backoff_max_s)
            self._emit(
                run,
                EventType.STAGE_RETRY,
                stage=spec.id,
                attempt=run.attempts(spec.id) + 1,
                error_class=error_class.value,
                delay_s=delay,
            )
            logger.warning(f"Stage {spec.id} failed ({error_class.value}); retry {retry}/{retries} in {delay}s")
            self._sleep(delay)

    def _attempt(self, run: PipelineRun, ctx: RunContext, stage_id: str) -> StageResult:
        attempt = run.attempts(stage_id) + 1
        self.checkpoints.save(run, stage_id, attempt)
        record = run.begin_stage(stage_id)
        self.doc.save(run, f"{stage_id} started (attempt {attempt})")
        self._emit(run, EventType.STAGE_STARTED, stage=stage_id, attempt=attempt)
        self._report(stage=stage_id, iteration=0, activity="starting")
        logger.info(f"Stage {stage_id} (attempt {attempt})")

        result = self.runner.execute(stage_id, ctx)

        run.finish_stage(record, result.status, result.artifacts, result.error, result.cost_usd)
        self._record_spend(run, stage_id, result.cost_usd)
        if result.ok:
            self.doc.save(run, f"{stage_id} complete (attempt {attempt}, {record.duration_s}s)")
            self._emit(
                run,
                EventType.STAGE_COMPLETED,
                stage=stage_id,
                attempt=attempt,
                duration_s=record.duration_s,
                cost_usd=result.cost_usd,
            )
        else:
            first_line = (result.error or "").strip().splitlines()[:1]
            self.doc.save(run, f"{stage_id} failed (attempt {attempt}): {first_line[0] if first_line else 'no detail'}")
            self._emit(
                run,
                EventType.STAGE_FAILED,
                stage=stage_id,
                attempt=attempt,
                duration_s=record.duration_s,
                cost_usd=result.cost_usd,
                error=(result.error or "")[-500:],
            )
        return result

    def _can_self_heal(self, run: PipelineRun, spec: StageSpec) -> bool:
        return (
            spec.id in ("build", "test")
            and run.template.is_enabled("build")
            and run.template.is_enabled("test")
            and run.self_heal_iteration < run.self_heal_limit
        )

    def _self_heal(self, run: PipelineRun, ctx: RunContext, failure: StageResult) -> StageResult:
        """
        Re-enter build with the failure output, then test again.

        Every cycle adds one build record (and a test record when the build
        succeeds). The loop always runs to the ceiling; a repeating error
        signature only adds a change-of-approach hint.
        """
        convergence = ConvergenceTracker()
        last = failure
        while run.self_heal_iteration < run.self_heal_limit:
            if self.doc.abort_requested():
                break
            run.self_heal_iteration += 1
            output = last.output or last.error or ""
            hint = ""
            if convergence.observe(output):
                hint = f"\n\n{STUCK_HINT}"
                self._emit(
                    run,
                    EventType.SELFHEAL_STUCK,
                    iteration=run.self_heal_iteration,
                    signature=convergence.last_signature,
                    repeats=convergence.count,
                )
            ctx.heal_feedback = (
                "Previous build attempt failed tests. Fix these errors:\n"
                + tail_lines(output, HEAL_FEEDBACK_LINES)
                + hint
            )
            self._emit(
                run,
                EventType.SELFHEAL_ATTEMPT,
                iteration=run.self_heal_iteration,
                limit=run.self_heal_limit,
            )
            logger.info(f"Self-heal cycle {run.self_heal_iteration}/{run.self_heal_limit}")

            build = self._attempt(run, ctx, "build")
            if not build.ok:
                last = build
                continue
            test = self._attempt(run, ctx, "test")
            if test.ok:
                ctx.heal_feedback = None
                return test
            last = test

        ctx.heal_feedback = None
        return last

    # ------------------------------------------------------------------
    # Terminal and paused states
    # ------------------------------------------------------------------

    def _complete(self, run: PipelineRun) -> PipelineRun:
        run.transition(RunStatus.COMPLETE)
        run.current_stage = None
        duration = (run.completed_at - run.started_at).total_seconds() if run.started_at else 0.0
        self.doc.save(run, f"run complete (cost ${run.cost_usd:.2f})")
        self._emit(
            run,
            EventType.PIPELINE_COMPLETED,
            duration_s=round(duration, 3),
            cost_usd=run.cost_usd,
            template=run.template.name,
        )
        self.checkpoints.clear(run.run_id)
        logger.info(f"Run {run.run_id} complete")

        if run.worktree:
            error = cleanup_worktree(self.caps.vcs, self.project_dir, Path(run.worktree))
            if error is None:
                self._emit(run, EventType.WORKTREE_CLEANED, path=run.worktree)
                self.doc.save(run, f"worktree {run.worktree} removed")
            else:
                self._emit(run, EventType.WORKTREE_CLEANUP_FAILED, path=run.worktree, error=error)
                self.doc.save(run, f"worktree cleanup failed: {error}")
        return run

    def _fail(self, run: PipelineRun, stage_id: str, result: StageResult) -> PipelineRun:
        run.transition(RunStatus.FAILED)
        run.error = result.error or result.output or f"{stage_id} failed"
        self.doc.save(run, f"run failed at {stage_id}")
        self._emit(
            run,
            EventType.PIPELINE_FAILED,
            stage=stage_id,
            cost_usd=run.cost_usd,
            error=run.error[-500:],
        )
        logger.error(f"Run {run.run_id} failed at {stage_id}")
        if run.worktree:
            logger.info(f"Worktree preserved for inspection: {run.worktree}")
        return run

    def _pause(self, run: PipelineRun, gate: str) -> PipelineRun:
        run.transition(RunStatus.PAUSED_FOR_GATE)
        run.pending_gate = gate
        self.doc.save(run, f"paused for approval: {gate}")
        self._emit(run, EventType.PIPELINE_PAUSED, gate=gate)
        logger.info(f"Run {run.run_id} paused at gate '{gate}'")
        return run

    def _mark_aborted(self, run: PipelineRun, reason: str) -> PipelineRun:
        run.transition(RunStatus.ABORTED)
        run.error = reason
        self.doc.save(run, f"run aborted: {reason}")
        self._emit(run, EventType.PIPELINE_ABORTED, stage=run.current_stage, reason=reason)
        self.doc.clear_abort()
        logger.info(f"Run {run.run_id} aborted")
        return run

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_existing(self) -> PipelineRun:
        if not self.doc.exists():
            raise ConfigError(f"No run found in {self.paths.state_dir}")
        return self.doc.load()

    def _emit(self, run: PipelineRun, event_type: EventType, **fields: Any) -> None:
        payload: dict[str, Any] = {"run_id": run.run_id, "issue": run.issue}
        payload.update(fields)
        self.events.emit(event_type, **payload)

    def _budget_exhausted(self, run: PipelineRun) -> bool:
        if run.ignore_budget:
            return False
        # Advisory: an unreachable reporter never blocks the run
        try:
            remaining = self.caps.cost.remaining_budget()
        except Exception as e:
            logger.warning(f"Budget check failed, continuing: {e}")
            return False
        return remaining is not None and remaining <= 0

    def _record_spend(self, run: PipelineRun, stage_id: str, cost_usd: float) -> None:
        if cost_usd <= 0:
            return
        try:
            self.caps.cost.record_spend(cost_usd, run_id=run.run_id, stage=stage_id)
        except Exception as e:
            logger.warning(f"Could not record spend for {stage_id}: {e}")

    def _start_heartbeat(self, run: PipelineRun) -> None:
        if not run.job_id:
            return
        self._heartbeat = HeartbeatWriter(
            self.heartbeats,
            run.job_id,
            interval_s=self.config.pipeline.heartbeat_interval_s,
            run_id=run.run_id,
            issue=run.issue,
        )
        self._heartbeat.start()

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.stop()
            self._heartbeat = None

    def _report(self, stage: str | None = None, iteration: int | None = None, activity: str | None = None) -> None:
        if self._heartbeat is not None:
            self._heartbeat.update(stage=stage, iteration=iteration, activity=activity)

    def _archive(self, previous: PipelineRun) -> None:
        dest = self.paths.archive_dir / previous.run_id
        dest.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self.paths.state_file), str(dest / self.paths.state_file.name))
        if self.paths.artifacts_dir.exists():
            shutil.move(str(self.paths.artifacts_dir), str(dest / self.paths.artifacts_dir.name))
        self.checkpoints.clear(previous.run_id)
        logger.info(f"Archived run {previous.run_id} ({previous.status.value})")
        self._prune_archives(keep=dest)

    def _prune_archives(self, keep: Path) -> None:
        cutoff = time.time() - self.config.pipeline.archive_retention_days * 86400
        for entry in self.paths.archive_dir.iterdir():
            if entry == keep or not entry.is_dir():
                continue
            if entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry, ignore_errors=True)
                logger.debug(f"Pruned archived run {entry.name}")
