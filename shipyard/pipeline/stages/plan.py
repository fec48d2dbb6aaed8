# shipyard/pipeline/stages/plan.py
"""Plan: ask the agent for a plan, then extract the definition of done and a task list."""

import json
import logging
import re

from shipyard.pipeline.stages.base import RunContext, Stage, StageResult, completed, failed
from shipyard.storage import artifacts as names

logger = logging.getLogger(__name__)

# Error text that agent CLIs print on stdout with exit code 0
_ERROR_MASQUERADE = re.compile(
    r"^\s*(API Error|Error:|Invalid API key|Credit balance is too low|"
    r"Usage limit reached|Authentication failed|Execution error)",
    re.IGNORECASE,
)
_DOD_HEADING = re.compile(r"^#{1,6}\s*Definition of Done\s*$", re.IGNORECASE | re.MULTILINE)
_HEADING = re.compile(r"^#{1,6}\s", re.MULTILINE)
_CHECKBOX = re.compile(r"^\s*[-*]\s+\[[ xX]\]\s+(.+)$", re.MULTILINE)
_STEP = re.compile(r"^\s*(?:\d+[.)]|[-*])\s+(.+)$", re.MULTILINE)

PLAN_SECTIONS = ("Summary", "Steps", "Definition of Done", "Risks")


def _project_listing(ctx: RunContext, limit: int = 50) -> str:
    try:
        entries = sorted(p.name + ("/" if p.is_dir() else "") for p in ctx.workdir.iterdir())
    except OSError:
        return ""
    entries = [e for e in entries if not e.startswith(".")]
    return "\n".join(entries[:limit])


def build_plan_prompt(ctx: RunContext) -> str:
    intake = json.loads(ctx.artifacts.read_or_default(names.INTAKE, "{}") or "{}")
    sections = "\n".join(f"## {s}" for s in PLAN_SECTIONS)
    parts = [
        f"Goal: {ctx.run.goal}",
        f"Task type: {ctx.run.task_type or 'feature'}",
    ]
    if intake.get("body"):
        parts.append(f"Issue description:\n{intake['body']}")
    listing = _project_listing(ctx)
    if listing:
        parts.append(f"Project files:\n{listing}")
    if ctx.run.test_cmd:
        parts.append(f"Test command: {ctx.run.test_cmd}")
    parts.append(
        "Write an implementation plan in Markdown with exactly these sections:\n"
        f"{sections}\n"
        "List every step as a '- [ ]' checkbox. The Definition of Done must be "
        "a checkbox list of verifiable outcomes."
    )
    return "\n\n".join(parts)


def validate_plan(text: str) -> str | None:
    """Return why text is not a usable plan, or None."""
    stripped = text.strip()
    if not stripped:
        return "Agent returned an empty plan"
    if _ERROR_MASQUERADE.match(stripped):
        return f"Agent returned an error instead of a plan: {stripped.splitlines()[0]}"
    if len(stripped.splitlines()) < 3:
        return f"Plan is too short ({len(stripped.splitlines())} lines)"
    return None


def extract_definition_of_done(plan: str, goal: str) -> str:
    match = _DOD_HEADING.search(plan)
    if match:
        rest = plan[match.end():]
        nxt = _HEADING.search(rest)
        section = (rest[: nxt.start()] if nxt else rest).strip()
        if section:
            return f"# Definition of Done\n\n{section}\n"
    return f"# Definition of Done\n\n- [ ] {goal}\n- [ ] All tests pass\n"


def extract_tasks(plan: str, goal: str) -> list[str]:
    tasks = [m.strip() for m in _CHECKBOX.findall(plan)]
    if not tasks:
        tasks = [m.strip() for m in _STEP.findall(plan)]
    return tasks or [goal]


class PlanStage(Stage):
    name = "plan"
    required_artifacts = (names.PLAN, names.DEFINITION_OF_DONE, names.TASKS)

    def execute(self, ctx: RunContext) -> StageResult:
        ctx.report(stage=self.name, activity="planning")
        result = ctx.caps.agent.run(
            build_plan_prompt(ctx),
            model=ctx.model_for(self.name),
            cwd=ctx.workdir,
            max_turns=ctx.config.agent.max_turns,
            role="planner",
        )
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exited with {result.exit_code}"
            return failed(f"Planning agent {reason}:\n{result.output}", cost_usd=result.cost_usd)

        problem = validate_plan(result.output)
        if problem:
            return failed(problem, output=result.output, cost_usd=result.cost_usd)

        plan = result.output.strip() + "\n"
        tasks = extract_tasks(plan, ctx.run.goal)
        written = [
            ctx.artifacts.write(names.PLAN, plan),
            ctx.artifacts.write(
                names.DEFINITION_OF_DONE, extract_definition_of_done(plan, ctx.run.goal)
            ),
            ctx.artifacts.write(
                names.TASKS, "# Tasks\n\n" + "\n".join(f"- [ ] {t}" for t in tasks) + "\n"
            ),
        ]
        logger.info(f"Plan written with {len(tasks)} tasks")
        return completed(written, output=plan, cost_usd=result.cost_usd)
