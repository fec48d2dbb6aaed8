# shipyard/pipeline/stages/test.py
"""
Test: run the project's test command and keep its output verbatim.

Pass or fail comes from the exit code only. Output is never scanned for
words like "fail", since passing suites print them too. The one exception
is an optional coverage threshold, enforced only when a percentage can be
found in the output.
"""

import logging
import re

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

_COVERAGE = (
    re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE),
    re.compile(r"All files\s*\|\s*(\d+(?:\.\d+)?)", re.MULTILINE),
    re.compile(r"coverage[:\s]+(\d+(?:\.\d+)?)%", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)%\s+coverage", re.IGNORECASE),
)


def parse_coverage(output: str) -> float | None:
    for pattern in _COVERAGE:
        match = pattern.search(output)
        if match:
            return float(match.group(1))
    return None


class TestStage(Stage):
    name = "test"
    required_artifacts = (names.TEST_RESULTS,)
    __test__ = False

    def execute(self, ctx: RunContext) -> StageResult:
        command = ctx.run.test_cmd
        if not command:
            note = "No test command configured or detected; nothing to run.\n"
            return completed([ctx.artifacts.write(names.TEST_RESULTS, note)], output=note)

        cfg = ctx.stage_config(self.name)
        ctx.report(stage=self.name, activity="tests")
        code, output = run_shell(command, ctx.workdir, cfg.timeout_s or ctx.config.pipeline.test_timeout_s)
        written = [ctx.artifacts.write(names.TEST_RESULTS, output)]

        if code != 0:
            logger.info(f"Tests failed with exit code {code}")
            return failed(f"Test command exited with {code}:\n{output}", written, output)

        if cfg.coverage_min > 0:
            coverage = parse_coverage(output)
            if coverage is not None and coverage < cfg.coverage_min:
                return failed(
                    f"Coverage {coverage:.1f}% is below the required {cfg.coverage_min:.1f}%",
                    written,
                    output,
                )
        return completed(written, output=output)
