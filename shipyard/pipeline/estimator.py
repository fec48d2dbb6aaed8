# shipyard/pipeline/estimator.py
"""
Dry-run estimates.

Per-stage duration and cost come from the lower median of recorded
stage.completed events (see shipyard.history). Stages with no history fall
back to fixed default durations and a token-rate cost for agent stages.
Estimation only reads: it writes nothing and starts no processes, and the
rendered text depends only on its inputs.
"""

from dataclasses import dataclass

from shipyard.history import lower_median, pipeline_durations, stage_costs, stage_durations
from shipyard.models.events import Event
from shipyard.models.templates import PipelineTemplate
from shipyard.timeutil import fmt_duration

DEFAULT_STAGE_SECONDS: dict[str, int] = {
    "intake": 30,
    "plan": 120,
    "build": 900,
    "test": 180,
    "review": 120,
    "submit": 30,
    "merge": 30,
    "deploy": 300,
    "validate": 120,
    "monitor": 300,
}

AGENT_STAGES = frozenset({"plan", "build", "review"})

# USD per million tokens (input, output)
MODEL_RATES: dict[str, tuple[float, float]] = {
    "opus": (15.0, 75.0),
    "sonnet": (3.0, 15.0),
    "haiku": (0.25, 1.25),
}
FALLBACK_INPUT_TOKENS = 8000
FALLBACK_OUTPUT_TOKENS = 4000


def token_cost(model: str, input_tokens: int = FALLBACK_INPUT_TOKENS, output_tokens: int = FALLBACK_OUTPUT_TOKENS) -> float:
    key = next((k for k in MODEL_RATES if k in model.lower()), "sonnet")
    rate_in, rate_out = MODEL_RATES[key]
    return round(input_tokens / 1_000_000 * rate_in + output_tokens / 1_000_000 * rate_out, 4)


@dataclass(frozen=True)
class StageEstimate:
    stage: str
    gate: str
    duration_s: float
    cost_usd: float
    samples: int


@dataclass(frozen=True)
class Estimate:
    template: str
    goal: str
    model: str
    stages: tuple[StageEstimate, ...]
    recent_runs: tuple[float, ...] = ()

    @property
    def total_duration_s(self) -> float:
        return sum(s.duration_s for s in self.stages)

    @property
    def total_cost_usd(self) -> float:
        return round(sum(s.cost_usd for s in self.stages), 4)


def estimate(template: PipelineTemplate, events: list[Event], model: str, goal: str = "") -> Estimate:
    rows = []
    for spec in template.enabled_stages():
        durations = stage_durations(events, spec.id)
        costs = stage_costs(events, spec.id)
        duration = lower_median(durations)
        cost = lower_median(costs)
        stage_model = spec.config.model or template.model or model
        if cost is None:
            cost = token_cost(stage_model) if spec.id in AGENT_STAGES else 0.0
        rows.append(
            StageEstimate(
                stage=spec.id,
                gate=spec.gate.value,
                duration_s=float(duration if duration is not None else DEFAULT_STAGE_SECONDS[spec.id]),
                cost_usd=round(cost, 4),
                samples=len(durations),
            )
        )
    return Estimate(
        template=template.name,
        goal=goal,
        model=model,
        stages=tuple(rows),
        recent_runs=tuple(pipeline_durations(events)),
    )


def render_estimate(est: Estimate) -> str:
    lines = [
        f"Dry run: template '{est.template}' ({len(est.stages)} stages enabled)",
        f"Goal:  {est.goal or '(from ticket)'}",
        f"Model: {est.model}",
        "",
        f"{'STAGE':<10} {'GATE':<8} {'DURATION':>9} {'COST':>9}  SOURCE",
    ]
    for row in est.stages:
        source = f"history (n={row.samples})" if row.samples else "default"
        lines.append(
            f"{row.stage:<10} {row.gate:<8} {fmt_duration(row.duration_s):>9} "
            f"{'$' + format(row.cost_usd, '.2f'):>9}  {source}"
        )
    lines += [
        f"{'TOTAL':<10} {'':<8} {fmt_duration(est.total_duration_s):>9} "
        f"{'$' + format(est.total_cost_usd, '.2f'):>9}",
        "",
    ]
    if est.recent_runs:
        lines.append(
            f"Recent full runs: {fmt_duration(lower_median(est.recent_runs))} "
            f"(lower median of last {len(est.recent_runs)})"
        )
    lines += [
        "Estimates are lower medians of recorded stage durations and costs.",
        "Nothing was written and no process was started.",
    ]
    return "\n".join(lines) + "\n"
