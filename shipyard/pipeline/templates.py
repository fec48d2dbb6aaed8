# shipyard/pipeline/templates.py
"""
Built-in pipeline templates and template file loading.

A template name resolves, in order, to: an existing file path, a
<name>.json / <name>.yaml / <name>.yml file in one of the search
directories, then a built-in.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from shipyard.errors import TemplateError
from shipyard.models.templates import PipelineTemplate

logger = logging.getLogger(__name__)

_EXTENSIONS = (".json", ".yaml", ".yml")


def _stage(stage_id: str, gate: str = "auto", **config: Any) -> dict[str, Any]:
    return {"id": stage_id, "gate": gate, "config": config}


BUILTIN_TEMPLATES: dict[str, dict[str, Any]] = {
    "standard": {
        "name": "standard",
        "description": "Plan with approval, build, test, review and open a PR",
        "stages": [
            _stage("intake"),
            _stage("plan", "approve"),
            _stage("build"),
            _stage("test"),
            _stage("review"),
            _stage("submit", "approve"),
        ],
    },
    "fast": {
        "name": "fast",
        "description": "Build, test and open a PR without planning or review",
        "stages": [
            _stage("intake"),
            _stage("build"),
            _stage("test"),
            _stage("submit"),
        ],
    },
    "full": {
        "name": "full",
        "description": "Every stage, gated before merge and deploy",
        "stages": [
            _stage("intake"),
            _stage("plan", "approve"),
            _stage("build"),
            _stage("test", coverage_min=0),
            _stage("review", blocking=True),
            _stage("submit"),
            _stage("merge", "approve"),
            _stage("deploy", "approve"),
            _stage("validate"),
            _stage("monitor", checks=3, interval_s=60),
        ],
    },
    "hotfix": {
        "name": "hotfix",
        "description": "Urgent fix: build, test, PR and merge with no gates",
        "stages": [
            _stage("intake"),
            _stage("build", max_iterations=10),
            _stage("test"),
            _stage("submit"),
            _stage("merge"),
        ],
    },
    "autonomous": {
        "name": "autonomous",
        "description": "Unattended daemon runs: plan, build, test, review, PR",
        "stages": [
            _stage("intake"),
            _stage("plan"),
            _stage("build"),
            _stage("test"),
            _stage("review"),
            _stage("submit"),
        ],
    },
}


def parse_template(data: Any, source: str) -> PipelineTemplate:
    if not isinstance(data, dict):
        raise TemplateError(f"Template {source} must be a mapping")
    try:
        return PipelineTemplate.model_validate(data)
    except ValidationError as e:
        raise TemplateError(f"Invalid template {source}: {e}") from e


def load_template_file(path: Path) -> PipelineTemplate:
    """Load a JSON or YAML template file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TemplateError(f"Cannot read template {path}: {e}") from e
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise TemplateError(f"Template {path} is not valid {path.suffix[1:].upper()}: {e}") from e
    if isinstance(data, dict):
        data.setdefault("name", path.stem)
    return parse_template(data, str(path))


def _find_file(name: str, search_dirs: list[Path]) -> Path | None:
    for directory in search_dirs:
        for ext in _EXTENSIONS:
            candidate = Path(directory).expanduser() / f"{name}{ext}"
            if candidate.is_file():
                return candidate
    return None


def load_template(name: str, search_dirs: list[Path] | None = None) -> PipelineTemplate:
    """
    Resolve a template by path or name.

    Raises:
        TemplateError: Unknown name or malformed file
    """
    as_path = Path(name).expanduser()
    if as_path.suffix in _EXTENSIONS and as_path.is_file():
        return load_template_file(as_path)

    found = _find_file(name, search_dirs or [])
    if found is not None:
        logger.debug(f"Using template {found}")
        return load_template_file(found)

    if name in BUILTIN_TEMPLATES:
        return parse_template(BUILTIN_TEMPLATES[name], f"built-in '{name}'")

    raise TemplateError(
        f"Unknown template '{name}' (built-ins: {', '.join(sorted(BUILTIN_TEMPLATES))})"
    )


def list_templates(search_dirs: list[Path] | None = None) -> list[tuple[str, str, str]]:
    """Return (name, source, description) for built-ins and discovered files."""
    found: dict[str, tuple[str, str, str]] = {}
    for name, data in BUILTIN_TEMPLATES.items():
        found[name] = (name, "built-in", data.get("description", ""))
    for directory in search_dirs or []:
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if path.suffix not in _EXTENSIONS or path.stem in found and found[path.stem][1] != "built-in":
                continue
            try:
                template = load_template_file(path)
            except TemplateError as e:
                logger.warning(f"Skipping template: {e}")
                continue
            found[path.stem] = (path.stem, str(path), template.description)
    return sorted(found.values())


def default_search_dirs(
    project_dir: Path, state_dir_name: str, extra: list[str]
) -> list[Path]:
    """Project-local templates first, then configured directories."""
    return [project_dir / state_dir_name / "templates", *(Path(d) for d in extra)]
