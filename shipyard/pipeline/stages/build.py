# shipyard/pipeline/stages/build.py
"""
Build: the nested iterate-until-tests-pass loop.

Each iteration invokes the agent, commits whatever it changed and runs the
test command (pass/fail by exit code). The loop has its own bounds,
independent of the engine's self-healing retries around it:

- max_iterations, auto-extended by extension_size up to max_extensions
  times, only while tests still fail and a commit landed recently
- a no-progress breaker after no_progress_limit iterations without a commit
- fatal agent errors (authentication, missing API key) stop immediately
"""

import logging
import re

from shipyard.models.events import EventType
from shipyard.pipeline.classify import tail_lines
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

COMPLETION_MARKER = "LOOP_COMPLETE"
FEEDBACK_LINES = 30

_FATAL = re.compile(
    r"invalid api key|authentication[_ ]error|unauthorized|not logged in|"
    r"please run /login|credit balance is too low|command not found",
    re.IGNORECASE,
)


def build_prompt(ctx: RunContext, iteration: int, last_test_output: str | None) -> str:
    parts = [f"Goal: {ctx.run.goal}"]
    plan = ctx.artifacts.read_or_default(names.PLAN)
    if plan:
        parts.append(f"Plan:\n{plan}")
    dod = ctx.artifacts.read_or_default(names.DEFINITION_OF_DONE)
    if dod:
        parts.append(dod)
    if ctx.heal_feedback:
        parts.append(ctx.heal_feedback)
    if last_test_output:
        parts.append(
            f"The tests failed after the previous iteration:\n{tail_lines(last_test_output, FEEDBACK_LINES)}"
        )
    if ctx.run.test_cmd:
        parts.append(f"Run `{ctx.run.test_cmd}` to check your work.")
    else:
        parts.append(f"When the work is complete, print {COMPLETION_MARKER} on its own line.")
    parts.append(f"This is iteration {iteration}.")
    return "\n\n".join(parts)


class BuildStage(Stage):
    name = "build"
    required_artifacts = (names.BUILD_SUMMARY,)

    def execute(self, ctx: RunContext) -> StageResult:
        settings = ctx.config.build
        cap = ctx.stage_config(self.name).max_iterations or settings.max_iterations
        test_cmd = ctx.run.test_cmd
        timeout_s = ctx.stage_config("test").timeout_s or ctx.config.pipeline.test_timeout_s

        written: list[str] = []
        cost = 0.0
        extensions = 0
        no_progress = 0
        last_commit_iteration = 0
        last_test_output: str | None = None
        tests_passing = False
        iteration = 0
        outcome = ""

        while True:
            iteration += 1
            ctx.report(stage=self.name, iteration=iteration, activity="agent")
            result = ctx.caps.agent.run(
                build_prompt(ctx, iteration, last_test_output),
                model=ctx.model_for(self.name),
                cwd=ctx.workdir,
                max_turns=ctx.config.agent.max_turns,
                role="builder",
            )
            cost += result.cost_usd
            log = [f"# Iteration {iteration}", "", "## Agent", result.output]

            if not result.ok and _FATAL.search(result.output or ""):
                written.append(ctx.artifacts.write(names.build_iteration_log(iteration), "\n".join(log) + "\n"))
                return failed(
                    f"Agent failed fatally on iteration {iteration}:\n{result.output}",
                    written,
                    result.output,
                    cost,
                )

            committed = ctx.caps.vcs.commit_all(
                ctx.workdir, f"shipyard: {ctx.run.goal[:60]} (iteration {iteration})"
            )
            if committed:
                no_progress = 0
                last_commit_iteration = iteration
            else:
                no_progress += 1

            if test_cmd:
                ctx.report(stage=self.name, iteration=iteration, activity="tests")
                code, test_output = run_shell(test_cmd, ctx.workdir, timeout_s)
                tests_passing = code == 0
                last_test_output = None if tests_passing else test_output
                log += ["", f"## Tests (exit {code})", test_output]
            else:
                tests_passing = result.ok and COMPLETION_MARKER in (result.output or "")

            written.append(ctx.artifacts.write(names.build_iteration_log(iteration), "\n".join(log) + "\n"))
            ctx.emit(
                EventType.BUILD_ITERATION,
                stage=self.name,
                iteration=iteration,
                committed=committed,
                tests_passing=tests_passing,
            )

            if tests_passing:
                outcome = "complete"
                break
            if no_progress >= settings.no_progress_limit:
                outcome = f"no progress: {no_progress} iterations without a commit"
                break
            if iteration >= cap:
                recent = iteration - last_commit_iteration < settings.extension_size
                if test_cmd and recent and extensions < settings.max_extensions:
                    extensions += 1
                    cap += settings.extension_size
                    ctx.run.extension_count += 1
                    ctx.emit(EventType.BUILD_EXTENDED, stage=self.name, new_cap=cap, extension=extensions)
                    logger.info(f"Build loop extended to {cap} iterations ({extensions}/{settings.max_extensions})")
                    continue
                outcome = f"iteration cap reached ({cap})"
                break

        summary = [
            "# Build summary",
            "",
            f"- Iterations: {iteration}",
            f"- Extensions: {extensions}",
            f"- Outcome: {outcome}",
        ]
        written.append(ctx.artifacts.write(names.BUILD_SUMMARY, "\n".join(summary) + "\n"))

        if outcome == "complete":
            return completed(written, output=result.output, cost_usd=cost)
        detail = last_test_output if last_test_output is not None else result.output
        return failed(f"Build loop stopped: {outcome}\n{tail_lines(detail or '', FEEDBACK_LINES)}", written, detail or "", cost)
