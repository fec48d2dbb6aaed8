# tests/unit/test_stages.py
"""
Stage tests.

Each stage is executed directly against a RunContext with fake
capabilities; shell commands are real.
"""

import json

import pytest

from shipyard.capabilities.fakes import FakeVCS
from shipyard.capabilities.protocols import AgentResult
from shipyard.models.jobs import Ticket
from shipyard.models.runs import PipelineRun, StageStatus
from shipyard.models.templates import PipelineTemplate, StageSpec
from shipyard.pipeline.runner import StageRunner
from shipyard.pipeline.stages import create_stages
from shipyard.pipeline.stages.base import RunContext, completed, run_shell
from shipyard.pipeline.stages.build import COMPLETION_MARKER, BuildStage
from shipyard.pipeline.stages.delivery import CommandStage, MergeStage, SubmitStage
from shipyard.pipeline.stages.intake import IntakeStage
from shipyard.pipeline.stages.plan import (
    PlanStage,
    extract_definition_of_done,
    extract_tasks,
    validate_plan,
)
from shipyard.pipeline.stages.review import ReviewStage, count_findings
from shipyard.pipeline.stages.test import TestStage, parse_coverage
from shipyard.storage import artifacts as names
from shipyard.storage.artifacts import ArtifactStore


@pytest.fixture
def make_ctx(project, config, caps):
    def _make(stages=("intake", "plan", "build", "test"), stage_config=None, **run_fields) -> RunContext:
        stage_config = stage_config or {}
        template = PipelineTemplate(
            name="t",
            stages=[StageSpec(id=s, config=stage_config.get(s, {})) for s in stages],
        )
        run_fields.setdefault("goal", "Add a greeting")
        run = PipelineRun(template=template, **run_fields)
        run.init_stage_map()
        return RunContext(
            run=run,
            project_dir=project,
            workdir=project,
            artifacts=ArtifactStore(project / ".shipyard" / "pipeline-artifacts"),
            caps=caps,
            config=config,
        )

    return _make


class TestIntake:
    def test_goal_run_detects_and_branches(self, make_ctx, caps):
        ctx = make_ctx()
        result = IntakeStage().execute(ctx)

        assert result.ok
        assert ctx.run.task_type == "feature"
        assert ctx.run.branch == "feat/add-a-greeting"
        assert caps.vcs.branch == "feat/add-a-greeting"
        record = json.loads(ctx.artifacts.read(names.INTAKE))
        assert record["test_cmd"] is None

    def test_ticket_fills_goal_and_comments(self, make_ctx, caps):
        caps.tracker.tickets[4] = Ticket(number=4, title="Fix login crash", body="Stack trace", labels=["bug"])
        ctx = make_ctx(goal="", issue=4)
        assert IntakeStage().execute(ctx).ok

        assert ctx.run.goal == "Fix login crash"
        assert ctx.run.task_type == "bug"
        assert ctx.run.branch == "fix/fix-login-crash-4"
        assert caps.tracker.comments[0][0] == 4

    def test_preset_branch_is_kept(self, make_ctx, caps):
        ctx = make_ctx(branch="pipeline/wt")
        IntakeStage().execute(ctx)
        assert ctx.run.branch == "pipeline/wt"
        assert caps.vcs.branch == "main"

    def test_configured_test_command(self, make_ctx, config):
        config.pipeline.test_cmd = "make check"
        ctx = make_ctx()
        IntakeStage().execute(ctx)
        assert ctx.run.test_cmd == "make check"


class TestPlan:
    def test_writes_plan_dod_and_tasks(self, make_ctx, caps):
        ctx = make_ctx()
        result = PlanStage().execute(ctx)

        assert result.ok
        assert set(result.artifacts) == {names.PLAN, names.DEFINITION_OF_DONE, names.TASKS}
        assert ctx.artifacts.read(names.DEFINITION_OF_DONE) == "# Definition of Done\n\n- [ ] tests pass\n"
        assert caps.agent.calls[0]["role"] == "planner"

    @pytest.mark.parametrize(
        "text,problem",
        [
            ("", "empty"),
            ("Error: rate limited\n\nmore\nlines", "error instead of a plan"),
            ("one line", "too short"),
        ],
    )
    def test_validation(self, text, problem):
        assert problem in validate_plan(text)

    def test_rejected_plan_fails_stage(self, make_ctx, caps):
        caps.agent.default = AgentResult(exit_code=0, output="API Error: overloaded\n\n\n")
        assert not PlanStage().execute(make_ctx()).ok

    def test_extraction_fallbacks(self):
        assert "- [ ] Ship it" in extract_definition_of_done("# Plan\nno sections", "Ship it")
        assert extract_tasks("1. first\n2. second\n", "g") == ["first", "second"]
        assert extract_tasks("prose only", "g") == ["g"]


class TestBuild:
    def test_passes_on_first_iteration(self, make_ctx, caps):
        ctx = make_ctx(test_cmd="true")
        result = BuildStage().execute(ctx)

        assert result.ok
        assert len(caps.agent.calls) == 1
        assert caps.vcs.commits == ["shipyard: Add a greeting (iteration 1)"]
        assert ctx.artifacts.exists(names.build_iteration_log(1))
        assert "Outcome: complete" in ctx.artifacts.read(names.BUILD_SUMMARY)

    def test_iteration_cap(self, make_ctx, caps):
        ctx = make_ctx(test_cmd="echo failing; false")
        result = BuildStage().execute(ctx)

        assert not result.ok
        assert "iteration cap reached (3)" in result.error
        assert "failing" in result.output
        assert len(caps.agent.calls) == 3

    def test_previous_test_output_reaches_next_prompt(self, make_ctx, caps):
        ctx = make_ctx(test_cmd="echo 'expected 2 got 3'; false")
        BuildStage().execute(ctx)
        assert "expected 2 got 3" in caps.agent.calls[1]["prompt"]
        assert "iteration 2" in caps.agent.calls[1]["prompt"]

    def test_stage_config_overrides_cap(self, make_ctx, caps):
        ctx = make_ctx(test_cmd="false", stage_config={"build": {"max_iterations": 1}})
        BuildStage().execute(ctx)
        assert len(caps.agent.calls) == 1

    def test_auto_extension_while_committing(self, make_ctx, caps, config):
        config.build.max_extensions = 1
        config.build.extension_size = 2
        ctx = make_ctx(test_cmd="false")
        result = BuildStage().execute(ctx)

        assert "iteration cap reached (5)" in result.error
        assert len(caps.agent.calls) == 5
        assert ctx.run.extension_count == 1

    def test_no_progress_breaker(self, make_ctx, caps, config):
        config.build.max_iterations = 10
        caps.vcs = FakeVCS(commit_results=[False] * 10)
        ctx = make_ctx(test_cmd="false")
        result = BuildStage().execute(ctx)

        assert "no progress" in result.error
        assert len(caps.agent.calls) == config.build.no_progress_limit

    def test_fatal_agent_error_stops_immediately(self, make_ctx, caps):
        caps.agent.default = AgentResult(exit_code=1, output="Invalid API key")
        ctx = make_ctx(test_cmd="true")
        result = BuildStage().execute(ctx)

        assert not result.ok
        assert "fatally" in result.error
        assert caps.vcs.commits == []

    def test_completion_marker_without_test_command(self, make_ctx, caps):
        caps.agent.default = AgentResult(exit_code=0, output=f"done\n{COMPLETION_MARKER}\n")
        assert BuildStage().execute(make_ctx()).ok


class TestTestStage:
    def test_output_kept_verbatim(self, make_ctx):
        ctx = make_ctx(test_cmd="printf '3 failed tests were expected\\n'")
        result = TestStage().execute(ctx)

        assert result.ok
        assert ctx.artifacts.read(names.TEST_RESULTS) == "3 failed tests were expected\n"

    def test_exit_code_decides(self, make_ctx):
        result = TestStage().execute(make_ctx(test_cmd="echo all good; exit 2"))
        assert not result.ok
        assert result.error.startswith("Test command exited with 2:")

    def test_no_command_completes_with_note(self, make_ctx):
        ctx = make_ctx()
        assert TestStage().execute(ctx).ok
        assert "nothing to run" in ctx.artifacts.read(names.TEST_RESULTS)

    def test_coverage_threshold(self, make_ctx):
        ctx = make_ctx(test_cmd="echo 'TOTAL   120   30   75%'", stage_config={"test": {"coverage_min": 80}})
        result = TestStage().execute(ctx)
        assert not result.ok
        assert "75.0%" in result.error

    def test_parse_coverage(self):
        assert parse_coverage("TOTAL    10    1    90%") == 90.0
        assert parse_coverage("All files |   81.5 |") == 81.5
        assert parse_coverage("no numbers") is None

    def test_shell_timeout_returns_124(self, tmp_path):
        code, output = run_shell("sleep 5", tmp_path, timeout_s=1)
        assert code == 124
        assert "timed out" in output

    def test_non_utf8_output_passes_on_exit_code(self, make_ctx):
        ctx = make_ctx(test_cmd="printf 'caf\\351 ok\\n'; exit 0")
        result = StageRunner({"test": TestStage()}).execute("test", ctx)

        assert result.ok
        assert names.TEST_RESULTS in result.artifacts
        assert ctx.artifacts.read(names.TEST_RESULTS) == "caf\ufffd ok\n"

    def test_non_utf8_output_kept_on_failure(self, make_ctx):
        ctx = make_ctx(test_cmd="printf 'na\\357ve failure\\n'; exit 1")
        result = TestStage().execute(ctx)

        assert not result.ok
        assert "na\ufffdve failure" in ctx.artifacts.read(names.TEST_RESULTS)


class TestReview:
    def test_empty_diff_skips_agent(self, make_ctx, caps):
        ctx = make_ctx(stages=("intake", "review"))
        assert ReviewStage().execute(ctx).ok
        assert caps.agent.calls == []

    def test_blocking_findings_fail(self, make_ctx, caps):
        caps.vcs.diff_text = "+ new line"
        caps.agent.default = AgentResult(
            exit_code=0, output="- **[Bug]** a.py:1: off by one\n- **[Suggestion]** b.py:2: rename"
        )
        ctx = make_ctx(stages=("intake", "review"), stage_config={"review": {"blocking": True}})
        result = ReviewStage().execute(ctx)

        assert not result.ok
        assert json.loads(ctx.artifacts.read(names.REVIEW_SUMMARY))["bug"] == 1

    def test_count_findings(self):
        counts = count_findings("**[Critical]** x\n**Security** y\n**[warning]** z")
        assert (counts["critical"], counts["security"], counts["warning"]) == (1, 1, 1)


class TestDelivery:
    def test_submit_then_merge(self, make_ctx, caps):
        ctx = make_ctx(stages=("intake", "submit", "merge"), branch="feat/x", issue=9)
        assert SubmitStage().execute(ctx).ok
        assert caps.vcs.pushed == ["feat/x"]
        assert ctx.run.pr_url in caps.tracker.prs

        assert MergeStage().execute(ctx).ok
        assert caps.tracker.prs[ctx.run.pr_url] == "merged"

    def test_submit_without_branch(self, make_ctx):
        assert not SubmitStage().execute(make_ctx(stages=("intake", "submit"))).ok

    def test_monitor_checks_repeat(self, make_ctx):
        ctx = make_ctx(
            stages=("intake", "monitor"),
            stage_config={"monitor": {"command": "echo ok", "checks": 3, "interval_s": 5}},
        )
        slept = []
        ctx.sleep = slept.append
        result = CommandStage("monitor", names.MONITOR).execute(ctx)

        assert result.ok
        assert slept == [5, 5]
        assert ctx.artifacts.read(names.MONITOR).count("exit 0") == 3

    def test_command_failure(self, make_ctx):
        ctx = make_ctx(stages=("intake", "deploy"), stage_config={"deploy": {"command": "exit 4"}})
        result = CommandStage("deploy", names.DEPLOY).execute(ctx)
        assert "exited with 4" in result.error


class TestRunner:
    def test_exceptions_become_failures(self, make_ctx):
        ctx = make_ctx(goal="", issue=404)
        result = StageRunner().execute("intake", ctx)
        assert result.status == StageStatus.FAILED
        assert "CapabilityError" in result.error

    def test_missing_required_artifact(self, make_ctx):
        class Lazy(IntakeStage):
            def execute(self, ctx):
                return completed()

        result = StageRunner({"intake": Lazy()}).execute("intake", make_ctx())
        assert "did not produce intake.json" in result.error

    def test_unknown_stage(self, make_ctx):
        assert "No implementation" in StageRunner({}).execute("plan", make_ctx()).error

    def test_every_stage_id_has_an_implementation(self):
        assert set(create_stages()) == {
            "intake", "plan", "build", "test", "review", "submit", "merge", "deploy", "validate", "monitor"
        }
