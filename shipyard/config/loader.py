# shipyard/config/loader.py
"""
Configuration loading with auto-creation of defaults.

Uses platformdirs for cross-platform config directory management.
"""

import logging
import os
from pathlib import Path

import yaml
from platformdirs import user_config_path, user_data_path
from pydantic import ValidationError

from shipyard.errors import ConfigError

from .schema import ShipyardConfig

logger = logging.getLogger(__name__)

HOME_ENV = "SHIPYARD_HOME"


def get_config_path(ensure_exists: bool = True) -> Path:
    """Get path to config file, ensuring config directory exists."""
    config_dir = user_config_path("shipyard", ensure_exists=ensure_exists)
    return config_dir / "config.yaml"


def load_config(path: Path | None = None, create_missing: bool = True) -> ShipyardConfig:
    """
    Load configuration from YAML file.

    If the config file doesn't exist, creates it with defaults (unless
    create_missing is False, which dry runs use to stay side-effect free).

    Raises:
        ConfigError: If the file is not valid YAML or fails validation
    """
    config_path = path or get_config_path(ensure_exists=create_missing)

    if not config_path.exists():
        default_config = ShipyardConfig()
        if not create_missing:
            return default_config

        config_dict = default_config.model_dump(mode="json")
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("w") as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Created default config at {config_path}")
        return default_config

    try:
        with config_path.open("r") as f:
            config_data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {config_path} is not valid YAML: {e}") from e

    if not isinstance(config_data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    try:
        config = ShipyardConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {config_path}: {e}") from e

    logger.debug(f"Loaded config from {config_path}")
    return config


def resolve_home(config: ShipyardConfig, create: bool = True) -> Path:
    """
    Resolve the shared data directory.

    Order: SHIPYARD_HOME env var, config.home_dir, platform user data dir.
    Spawned runs inherit SHIPYARD_HOME so they share the daemon's event log
    and heartbeat directory.
    """
    raw = os.environ.get(HOME_ENV) or config.home_dir
    home = Path(raw).expanduser() if raw else user_data_path("shipyard")
    if create:
        home.mkdir(parents=True, exist_ok=True)
    return home
