# shipyard/pipeline/stages/intake.py
"""Intake: resolve the work item, pick the test command and branch."""

import json
import logging

from shipyard.errors import CapabilityError
from shipyard.pipeline.detection import branch_name, detect_task_type, detect_test_command
from shipyard.pipeline.stages.base import RunContext, Stage, StageResult, completed, failed
from shipyard.storage import artifacts as names

logger = logging.getLogger(__name__)


class IntakeStage(Stage):
    name = "intake"
    required_artifacts = (names.INTAKE,)

    def execute(self, ctx: RunContext) -> StageResult:
        run = ctx.run
        title = run.goal
        body = ""
        labels: list[str] = []

        if run.issue is not None:
            ticket = ctx.caps.tracker.fetch_ticket(run.issue)
            title, body, labels = ticket.title, ticket.body, list(ticket.labels)
            if not run.goal:
                run.goal = ticket.title
            try:
                ctx.caps.tracker.comment(run.issue, f"shipyard: pipeline run {run.run_id} started")
            except CapabilityError as e:
                logger.warning(f"Could not comment on #{run.issue}: {e}")

        if not run.goal.strip():
            return failed("No goal: the ticket has no title and no goal was given")

        if run.task_type is None:
            run.task_type = detect_task_type(f"{run.goal} {' '.join(labels)}")
        if run.test_cmd is None:
            run.test_cmd = ctx.config.pipeline.test_cmd or detect_test_command(ctx.workdir)

        # A preset branch (worktree or --branch) is already checked out
        if run.branch is None:
            run.branch = branch_name(run.goal, run.task_type, run.issue)
            ctx.caps.vcs.checkout_branch(ctx.workdir, run.branch, run.base_branch)

        record = {
            "run_id": run.run_id,
            "goal": run.goal,
            "issue": run.issue,
            "title": title,
            "body": body,
            "labels": labels,
            "task_type": run.task_type,
            "test_cmd": run.test_cmd,
            "branch": run.branch,
            "base_branch": run.base_branch,
        }
        ctx.artifacts.write(names.INTAKE, json.dumps(record, indent=2) + "\n")
        logger.info(f"Intake: {run.task_type} on {run.branch} (tests: {run.test_cmd or 'none'})")
        return completed([names.INTAKE])
