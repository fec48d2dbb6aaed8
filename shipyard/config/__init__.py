# shipyard/config/__init__.py
"""Configuration system for shipyard."""

from .loader import get_config_path, load_config, resolve_home
from .schema import (
    AgentConfig,
    BudgetConfig,
    BuildLoopConfig,
    DaemonConfig,
    PipelineConfig,
    ShipyardConfig,
)

__all__ = [
    "ShipyardConfig",
    "PipelineConfig",
    "AgentConfig",
    "BuildLoopConfig",
    "DaemonConfig",
    "BudgetConfig",
    "load_config",
    "get_config_path",
    "resolve_home",
]
