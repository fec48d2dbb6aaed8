# shipyard/pipeline/detection.py
"""Project and goal heuristics: test command, task type, branch naming."""

import json
import re
from pathlib import Path

_TASK_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("security", ("security", "vulnerability", "cve", "xss", "injection", "auth bypass")),
    ("bug", ("fix", "bug", "broken", "crash", "error", "regression", "issue")),
    ("refactor", ("refactor", "cleanup", "clean up", "restructure", "simplify", "rename")),
    ("testing", ("test", "coverage", "spec")),
    ("docs", ("doc", "readme", "documentation", "comment")),
]

_BRANCH_PREFIX = {
    "bug": "fix",
    "security": "security",
    "refactor": "refactor",
    "testing": "test",
    "docs": "docs",
    "feature": "feat",
}


def detect_task_type(goal: str) -> str:
    text = goal.lower()
    for task_type, keywords in _TASK_KEYWORDS:
        if any(re.search(rf"\b{re.escape(k)}", text) for k in keywords):
            return task_type
    return "feature"


def branch_prefix(task_type: str | None) -> str:
    return _BRANCH_PREFIX.get(task_type or "feature", "feat")


def slugify(text: str, max_len: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "work"


def branch_name(goal: str, task_type: str | None, issue: int | None = None) -> str:
    name = f"{branch_prefix(task_type)}/{slugify(goal)}"
    return f"{name}-{issue}" if issue is not None else name


def _package_json_test(project: Path) -> str | None:
    try:
        data = json.loads((project / "package.json").read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    script = (data.get("scripts") or {}).get("test", "")
    if not script or "no test specified" in script:
        return None
    if (project / "pnpm-lock.yaml").exists():
        return "pnpm test"
    if (project / "yarn.lock").exists():
        return "yarn test"
    if (project / "bun.lockb").exists():
        return "bun test"
    return "npm test"


def _makefile_has_test(project: Path) -> bool:
    try:
        text = (project / "Makefile").read_text(encoding="utf-8")
    except OSError:
        return False
    return re.search(r"^test:", text, re.MULTILINE) is not None


def detect_test_command(project: Path) -> str | None:
    """Guess the test command from well-known project files, or None."""
    project = Path(project)
    if (project / "package.json").exists():
        cmd = _package_json_test(project)
        if cmd:
            return cmd
    python_markers = ("pyproject.toml", "pytest.ini", "setup.py", "setup.cfg")
    if any((project / m).exists() for m in python_markers) and (
        (project / "tests").is_dir() or (project / "test").is_dir()
    ):
        return "pytest"
    if (project / "Cargo.toml").exists():
        return "cargo test"
    if (project / "go.mod").exists():
        return "go test ./..."
    if (project / "Gemfile").exists():
        return "bundle exec rspec" if (project / "spec").is_dir() else "bundle exec rake test"
    if (project / "pom.xml").exists():
        return "mvn test"
    if (project / "build.gradle").exists() or (project / "build.gradle.kts").exists():
        return "./gradlew test"
    if (project / "Makefile").exists() and _makefile_has_test(project):
        return "make test"
    return None
