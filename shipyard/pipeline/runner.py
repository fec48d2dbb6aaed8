# shipyard/pipeline/runner.py
"""
Stage Runner.

execute(stage_id, ctx) -> StageResult. The runner turns exceptions into
failed results and checks that a completed stage wrote its required
artifacts. It never retries and never aborts.
"""

import logging
import traceback

from shipyard.models.runs import StageStatus
from shipyard.pipeline.stages import Stage, StageResult, create_stages
from shipyard.pipeline.stages.base import RunContext, failed

logger = logging.getLogger(__name__)


class StageRunner:
    def __init__(self, stages: dict[str, Stage] | None = None) -> None:
        self.stages = stages if stages is not None else create_stages()

    def execute(self, stage_id: str, ctx: RunContext) -> StageResult:
        stage = self.stages.get(stage_id)
        if stage is None:
            return failed(f"No implementation for stage '{stage_id}'")

        try:
            result = stage.execute(ctx)
        except Exception as e:
            logger.error(f"Stage {stage_id} raised {type(e).__name__}: {e}")
            logger.debug(traceback.format_exc())
            return failed(f"{type(e).__name__}: {e}")

        if result.status == StageStatus.COMPLETE:
            missing = [a for a in stage.required_artifacts if not ctx.artifacts.exists(a)]
            if missing:
                return failed(
                    f"Stage {stage_id} did not produce {', '.join(missing)}",
                    result.artifacts,
                    result.output,
                    result.cost_usd,
                )
        return result
