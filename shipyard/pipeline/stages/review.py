# shipyard/pipeline/stages/review.py
"""Review: the agent reviews the branch diff and tags findings by severity."""

import json
import logging
import re

from shipyard.pipeline.stages.base import RunContext, Stage, StageResult, completed, failed
from shipyard.storage import artifacts as names

logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "bug", "security", "warning", "suggestion")
BLOCKING_SEVERITIES = ("critical", "bug", "security")

_FINDING = re.compile(r"\*\*\[?(Critical|Bug|Security|Warning|Suggestion)\]?\*\*", re.IGNORECASE)
MAX_DIFF_CHARS = 60_000


def count_findings(report: str) -> dict[str, int]:
    counts = {s: 0 for s in SEVERITIES}
    for match in _FINDING.finditer(report):
        counts[match.group(1).lower()] += 1
    return counts


def build_review_prompt(goal: str, diff: str) -> str:
    if len(diff) > MAX_DIFF_CHARS:
        diff = diff[:MAX_DIFF_CHARS] + "\n[diff truncated]\n"
    return (
        f"Review this change made for the goal: {goal}\n\n"
        "Report each finding on its own line as\n"
        "- **[Severity]** file:line: description\n"
        "where Severity is one of Critical, Bug, Security, Warning, Suggestion.\n\n"
        f"```diff\n{diff}\n```"
    )


class ReviewStage(Stage):
    name = "review"
    required_artifacts = (names.REVIEW, names.REVIEW_SUMMARY)

    def execute(self, ctx: RunContext) -> StageResult:
        diff = ctx.caps.vcs.diff(ctx.workdir, ctx.run.base_branch)
        if not diff.strip():
            counts = {s: 0 for s in SEVERITIES}
            written = [
                ctx.artifacts.write(names.REVIEW, "# Review\n\nNo changes to review.\n"),
                ctx.artifacts.write(names.REVIEW_SUMMARY, json.dumps(counts, indent=2) + "\n"),
            ]
            return completed(written)

        ctx.report(stage=self.name, activity="reviewing")
        result = ctx.caps.agent.run(
            build_review_prompt(ctx.run.goal, diff),
            model=ctx.model_for(self.name),
            cwd=ctx.workdir,
            max_turns=ctx.config.agent.max_turns,
            role="reviewer",
        )
        if not result.ok:
            return failed(f"Review agent exited with {result.exit_code}:\n{result.output}", cost_usd=result.cost_usd)

        counts = count_findings(result.output)
        written = [
            ctx.artifacts.write(names.REVIEW, f"# Review\n\n{result.output.strip()}\n"),
            ctx.artifacts.write(names.REVIEW_SUMMARY, json.dumps(counts, indent=2) + "\n"),
        ]
        blocking = sum(counts[s] for s in BLOCKING_SEVERITIES)
        logger.info(f"Review findings: {counts}")

        if ctx.stage_config(self.name).blocking and blocking:
            return failed(
                f"Review found {blocking} blocking issue(s): "
                + ", ".join(f"{counts[s]} {s}" for s in BLOCKING_SEVERITIES if counts[s]),
                written,
                result.output,
                result.cost_usd,
            )
        return completed(written, output=result.output, cost_usd=result.cost_usd)
