# shipyard/pipeline/stages/delivery.py
"""Stages after review: submit, merge, and the command-driven deploy/validate/monitor."""

import logging

from shipyard.errors import CapabilityError
from shipyard.pipeline.stages.base import (
    RunContext,
    Stage,
    StageResult,
    completed,
    failed,
    run_shell,
)
from shipyard.storage import artifacts as names

logger = logging.getLogger(__name__)


def _pr_body(ctx: RunContext) -> str:
    parts = [f"Automated change for: {ctx.run.goal}"]
    if ctx.run.issue is not None:
        parts.append(f"Closes #{ctx.run.issue}")
    dod = ctx.artifacts.read_or_default(names.DEFINITION_OF_DONE)
    if dod:
        parts.append(dod)
    parts.append(f"Run: {ctx.run.run_id}")
    return "\n\n".join(parts)


class SubmitStage(Stage):
    name = "submit"
    required_artifacts = (names.PR_URL,)

    def execute(self, ctx: RunContext) -> StageResult:
        run = ctx.run
        if not run.branch:
            return failed("No branch to submit")
        ctx.caps.vcs.push(ctx.workdir, run.branch)
        url = ctx.caps.tracker.create_pr(run.branch, run.base_branch, run.goal[:72], _pr_body(ctx))
        run.pr_url = url
        if run.issue is not None:
            try:
                ctx.caps.tracker.comment(run.issue, f"shipyard: pull request opened: {url}")
            except CapabilityError as e:
                logger.warning(f"Could not comment on #{run.issue}: {e}")
        logger.info(f"Opened {url}")
        return completed([ctx.artifacts.write(names.PR_URL, url + "\n")], output=url)


class MergeStage(Stage):
    name = "merge"
    required_artifacts = (names.MERGE,)

    def execute(self, ctx: RunContext) -> StageResult:
        url = ctx.run.pr_url or ctx.artifacts.read_or_default(names.PR_URL).strip()
        if not url:
            return failed("No pull request to merge")
        ctx.caps.tracker.merge_pr(url)
        status = ctx.caps.tracker.pr_status(url)
        return completed([ctx.artifacts.write(names.MERGE, f"{url}\nstatus: {status}\n")], output=status)


class CommandStage(Stage):
    """
    Runs the stage's configured shell command.

    Without a command the stage records a note and completes. Monitor-style
    stages repeat the command `checks` times, `interval_s` apart, and fail on
    the first non-zero exit.
    """

    def __init__(self, name: str, artifact: str) -> None:
        self.name = name
        self.artifact = artifact
        self.required_artifacts = (artifact,)

    def execute(self, ctx: RunContext) -> StageResult:
        cfg = ctx.stage_config(self.name)
        if not cfg.command:
            note = f"No {self.name} command configured.\n"
            return completed([ctx.artifacts.write(self.artifact, note)], output=note)

        chunks: list[str] = []
        for check in range(1, cfg.checks + 1):
            if check > 1:
                ctx.sleep(cfg.interval_s)
            ctx.report(stage=self.name, iteration=check, activity=cfg.command)
            code, output = run_shell(cfg.command, ctx.workdir, cfg.timeout_s)
            chunks.append(f"$ {cfg.command}  (check {check}/{cfg.checks}, exit {code})\n{output}")
            if code != 0:
                written = [ctx.artifacts.write(self.artifact, "\n".join(chunks))]
                return failed(f"{self.name} command exited with {code}:\n{output}", written, output)

        return completed([ctx.artifacts.write(self.artifact, "\n".join(chunks))], output=chunks[-1])
