# tests/unit/conftest.py
"""Shared fixtures: an isolated home, a project directory and fake capabilities."""

import json

import pytest

from shipyard.capabilities import Capabilities
from shipyard.capabilities.fakes import FakeAgent, FakeCostReporter, FakeTracker, FakeVCS
from shipyard.config.schema import ShipyardConfig
from shipyard.pipeline.engine import PipelineEngine
from shipyard.storage.paths import HomePaths


@pytest.fixture
def home(tmp_path, monkeypatch) -> HomePaths:
    path = tmp_path / "home"
    path.mkdir()
    monkeypatch.setenv("SHIPYARD_HOME", str(path))
    monkeypatch.delenv("SHIPYARD_JOB_ID", raising=False)
    return HomePaths(path)


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def config() -> ShipyardConfig:
    cfg = ShipyardConfig()
    cfg.build.max_iterations = 3
    cfg.build.max_extensions = 0
    cfg.pipeline.stage_retry_backoff_max_s = 0
    return cfg


@pytest.fixture
def caps() -> Capabilities:
    return Capabilities(
        agent=FakeAgent(),
        vcs=FakeVCS(),
        tracker=FakeTracker(),
        cost=FakeCostReporter(),
    )


@pytest.fixture
def make_engine(project, config, caps, home):
    def _make(**kwargs) -> PipelineEngine:
        kwargs.setdefault("sleep", lambda _: None)
        return PipelineEngine(project, config, caps, home, **kwargs)

    return _make


@pytest.fixture
def write_template(project):
    """Write a project-local template; returns its name."""

    def _write(name: str, stages: list[dict]) -> str:
        directory = project / ".shipyard" / "templates"
        directory.mkdir(parents=True, exist_ok=True)
        (directory / f"{name}.json").write_text(json.dumps({"name": name, "stages": stages}))
        return name

    return _write


@pytest.fixture
def four_stage(write_template):
    """intake -> plan -> build -> test, every gate auto."""
    return write_template(
        "four", [{"id": "intake"}, {"id": "plan"}, {"id": "build"}, {"id": "test"}]
    )
