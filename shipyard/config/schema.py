# shipyard/config/schema.py
"""
Pydantic configuration models for shipyard.

All models use extra="ignore" to allow unknown YAML keys without crashing.
"""

from pydantic import BaseModel, ConfigDict, Field


class PipelineConfig(BaseModel):
    """Pipeline engine defaults (overridable per run from the CLI)."""

    model_config = ConfigDict(extra="ignore")

    default_template: str = Field(
        default="standard", description="Template used when --template is not given"
    )
    template_dirs: list[str] = Field(
        default_factory=list,
        description="Extra directories searched for <name>.json / <name>.yaml templates",
    )
    base_branch: str = Field(default="main", description="Branch new work is cut from")
    model: str = Field(default="sonnet", description="Default agent model")
    test_cmd: str | None = Field(
        default=None, description="Test command (None = auto-detect from project files)"
    )
    test_timeout_s: int = Field(
        default=1800, ge=1, description="Seconds before a test command is killed"
    )
    self_heal_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Build retries allowed after a test failure",
    )
    state_dir_name: str = Field(
        default=".shipyard", description="Per-project directory for state and artifacts"
    )
    worktree_dir_name: str = Field(
        default=".worktrees", description="Directory (under the project) holding worktrees"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0, description="Seconds between heartbeat rewrites"
    )
    archive_retention_days: int = Field(
        default=14, ge=0, description="Days archived terminal runs are kept"
    )
    stage_retry_backoff_max_s: float = Field(
        default=16.0, ge=0, description="Upper bound for backoff between stage retries"
    )


class AgentConfig(BaseModel):
    """AI coding agent subprocess configuration."""

    model_config = ConfigDict(extra="ignore")

    command: str = Field(default="claude", description="Agent CLI executable")
    timeout_s: int = Field(
        default=3600, ge=1, description="Seconds before an agent call is killed"
    )
    max_turns: int = Field(
        default=25, ge=1, le=500, description="Maximum agent turns per call"
    )
    extra_args: list[str] = Field(
        default_factory=list, description="Arguments appended to every agent call"
    )


class BuildLoopConfig(BaseModel):
    """Bounds for the nested iterate-until-tests-pass build loop."""

    model_config = ConfigDict(extra="ignore")

    max_iterations: int = Field(
        default=20, ge=1, le=200, description="Iterations before the cap is evaluated"
    )
    extension_size: int = Field(
        default=5, ge=1, description="Iterations added per auto-extension"
    )
    max_extensions: int = Field(
        default=3, ge=0, description="Hard cap on auto-extensions"
    )
    no_progress_limit: int = Field(
        default=3,
        ge=1,
        description="Consecutive iterations without a commit before giving up",
    )


class DaemonConfig(BaseModel):
    """Scheduler (daemon) configuration."""

    model_config = ConfigDict(extra="ignore")

    poll_interval_s: int = Field(default=60, ge=1, description="Normal poll interval")
    busy_poll_interval_s: int = Field(
        default=30, ge=1, description="Poll interval while items are queued"
    )
    idle_poll_interval_s: int = Field(
        default=120, ge=1, description="Poll interval after repeated empty cycles"
    )
    idle_cycles_before_backoff: int = Field(
        default=5, ge=1, description="Empty cycles before switching to the idle interval"
    )
    max_parallel: int = Field(
        default=2, ge=0, description="Externally assigned cap on concurrent jobs"
    )
    max_workers: int = Field(default=8, ge=1, description="Absolute ceiling on workers")
    worker_mem_gb: float = Field(
        default=4.0, gt=0, description="Memory reserved per running job"
    )
    cpu_utilization: float = Field(
        default=0.75, gt=0, le=1.0, description="Fraction of cores available to jobs"
    )
    cost_per_job_usd: float = Field(
        default=5.0, gt=0, description="Estimated spend per job for budget admission"
    )
    watch_label: str = Field(
        default="shipyard", description="Tracker label marking tickets as ready"
    )
    template: str = Field(default="autonomous", description="Template for spawned runs")
    heartbeat_timeout_s: int = Field(
        default=120, ge=1, description="Heartbeat timeout when no history or stage default applies"
    )
    heartbeat_floor_s: int = Field(
        default=60, ge=0, description="Lower bound on learned heartbeat timeouts"
    )
    stage_timeouts: dict[str, int] = Field(
        default_factory=lambda: {
            "intake": 60,
            "plan": 60,
            "build": 300,
            "test": 180,
            "review": 180,
        },
        description="Per-stage heartbeat timeouts used before history exists",
    )
    kill_grace_s: float = Field(
        default=10.0, ge=0, description="Seconds between SIGTERM and SIGKILL"
    )
    stagger_s: float = Field(
        default=30.0, ge=0, description="Minimum gap between spawns at a single slot"
    )
    breaker_threshold: int = Field(
        default=3, ge=1, description="Spawn failures within the window that open the breaker"
    )
    breaker_window_s: float = Field(default=300.0, gt=0)
    breaker_cooldown_s: float = Field(default=600.0, gt=0)
    max_retries: int = Field(
        default=2, ge=0, description="Retries for failures without a class-specific budget"
    )
    lock_timeout_s: float = Field(
        default=5.0, gt=0, description="Seconds to wait for the scheduler state lock"
    )


class BudgetConfig(BaseModel):
    """Spend limits."""

    model_config = ConfigDict(extra="ignore")

    daily_budget_usd: float | None = Field(
        default=None, ge=0, description="Daily spend limit (None = unlimited)"
    )


class ShipyardConfig(BaseModel):
    """Root configuration for shipyard."""

    model_config = ConfigDict(extra="ignore")

    home_dir: str | None = Field(
        default=None,
        description="Shared data directory (None = SHIPYARD_HOME or the platform data dir)",
    )
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    build: BuildLoopConfig = Field(default_factory=BuildLoopConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
