# shipyard/models/templates.py
"""
Pipeline template models.

A template is the ordered list of stages a run executes, each with a gate
mode and per-stage config. Stage ids are fixed and must appear in canonical
order; templates only choose which stages run and how.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

STAGE_ORDER: tuple[str, ...] = (
    "intake",
    "plan",
    "build",
    "test",
    "review",
    "submit",
    "merge",
    "deploy",
    "validate",
    "monitor",
)


class GateMode(str, Enum):
    """What happens after a stage completes."""

    AUTO = "auto"
    APPROVE = "approve"


class StageConfig(BaseModel):
    """Per-stage knobs. Stages read only the fields they understand."""

    model_config = ConfigDict(extra="ignore")

    retries: int = Field(default=0, ge=0, le=10, description="Retries for infrastructure errors")
    model: str | None = Field(default=None, description="Agent model override")
    max_iterations: int | None = Field(
        default=None, ge=1, description="Build loop iteration cap override"
    )
    coverage_min: float = Field(
        default=0.0, ge=0.0, le=100.0, description="Minimum coverage % (0 = not enforced)"
    )
    blocking: bool = Field(
        default=False, description="Review: fail on critical/bug/security findings"
    )
    command: str | None = Field(
        default=None, description="Shell command for deploy/validate/monitor"
    )
    timeout_s: int | None = Field(default=None, ge=1)
    checks: int = Field(default=1, ge=1, description="Monitor: number of checks")
    interval_s: float = Field(default=0.0, ge=0, description="Monitor: seconds between checks")


class StageSpec(BaseModel):
    """One stage entry in a template."""

    model_config = ConfigDict(extra="ignore")

    id: str
    enabled: bool = True
    gate: GateMode = GateMode.AUTO
    config: StageConfig = Field(default_factory=StageConfig)

    @model_validator(mode="before")
    @classmethod
    def _legacy_skip_gate(cls, data: Any) -> Any:
        # "gate: skip" in older templates means the stage is disabled
        if isinstance(data, dict) and data.get("gate") == "skip":
            data = {**data, "gate": "auto", "enabled": False}
        return data

    @field_validator("id")
    @classmethod
    def _known_stage(cls, value: str) -> str:
        if value not in STAGE_ORDER:
            raise ValueError(f"unknown stage '{value}' (expected one of {', '.join(STAGE_ORDER)})")
        return value


class PipelineTemplate(BaseModel):
    """Ordered stage template."""

    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    model: str | None = Field(default=None, description="Default model for agent stages")
    stages: list[StageSpec]

    @model_validator(mode="after")
    def _canonical_order(self) -> "PipelineTemplate":
        ids = [s.id for s in self.stages]
        if not ids:
            raise ValueError("template has no stages")
        if len(set(ids)) != len(ids):
            raise ValueError("template lists a stage more than once")
        positions = [STAGE_ORDER.index(i) for i in ids]
        if positions != sorted(positions):
            raise ValueError(f"stages must follow the order {' -> '.join(STAGE_ORDER)}")
        return self

    def stage(self, stage_id: str) -> StageSpec | None:
        for spec in self.stages:
            if spec.id == stage_id:
                return spec
        return None

    def enabled_stages(self) -> list[StageSpec]:
        return [s for s in self.stages if s.enabled]

    def is_enabled(self, stage_id: str) -> bool:
        spec = self.stage(stage_id)
        return spec is not None and spec.enabled
