# tests/unit/test_config.py
"""Tests for configuration loading and home resolution."""

import pytest
import yaml

from shipyard.config.loader import load_config, resolve_home
from shipyard.config.schema import ShipyardConfig
from shipyard.errors import ConfigError


class TestLoadConfig:
    def test_creates_defaults_when_missing(self, tmp_path):
        path = tmp_path / "cfg" / "config.yaml"
        config = load_config(path)

        assert path.exists()
        assert config.daemon.template == "autonomous"
        assert yaml.safe_load(path.read_text())["pipeline"]["base_branch"] == "main"

    def test_no_create_for_dry_runs(self, tmp_path):
        path = tmp_path / "config.yaml"
        config = load_config(path, create_missing=False)
        assert isinstance(config, ShipyardConfig)
        assert not path.exists()

    def test_partial_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("daemon:\n  max_workers: 2\npipeline:\n  model: opus\n")
        config = load_config(path)
        assert config.daemon.max_workers == 2
        assert config.pipeline.model == "opus"
        assert config.build.max_iterations == ShipyardConfig().build.max_iterations

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("legacy_option: 1\n")
        assert load_config(path).pipeline.base_branch == "main"

    @pytest.mark.parametrize(
        "text",
        ["daemon: [unclosed", "- just\n- a list\n", "daemon:\n  max_workers: 0\n"],
    )
    def test_invalid_files(self, tmp_path, text):
        path = tmp_path / "config.yaml"
        path.write_text(text)
        with pytest.raises(ConfigError):
            load_config(path)


class TestResolveHome:
    def test_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPYARD_HOME", str(tmp_path / "env-home"))
        config = ShipyardConfig(home_dir=str(tmp_path / "cfg-home"))
        assert resolve_home(config) == tmp_path / "env-home"
        assert (tmp_path / "env-home").is_dir()

    def test_config_then_no_create(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SHIPYARD_HOME", raising=False)
        config = ShipyardConfig(home_dir=str(tmp_path / "cfg-home"))
        assert resolve_home(config, create=False) == tmp_path / "cfg-home"
        assert not (tmp_path / "cfg-home").exists()
