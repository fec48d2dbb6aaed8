# shipyard/storage/artifacts.py
"""Per-run artifacts directory (stage outputs referenced by the state document)."""

from pathlib import Path

from shipyard.storage.atomic import atomic_write_bytes

INTAKE = "intake.json"
PLAN = "plan.md"
DEFINITION_OF_DONE = "definition-of-done.md"
TASKS = "pipeline-tasks.md"
BUILD_SUMMARY = "build-summary.md"
TEST_RESULTS = "test-results.log"
REVIEW = "review.md"
REVIEW_SUMMARY = "review-summary.json"
PR_URL = "pr-url.txt"
MERGE = "merge.txt"
DEPLOY = "deploy.log"
VALIDATE = "validate.log"
MONITOR = "monitor.log"


def build_iteration_log(iteration: int) -> str:
    return f"build-iteration-{iteration}.log"


class ArtifactStore:
    """Flat directory of named artifacts; every write is atomic."""

    def __init__(self, directory: Path) -> None:
        self.dir = Path(directory)

    def path(self, name: str) -> Path:
        if "/" in name or "\\" in name or name in ("", ".", ".."):
            raise ValueError(f"Invalid artifact name: {name!r}")
        return self.dir / name

    def write(self, name: str, content: str | bytes) -> str:
        data = content.encode("utf-8") if isinstance(content, str) else content
        atomic_write_bytes(self.path(name), data)
        return name

    def read(self, name: str) -> str:
        return self.path(name).read_text(encoding="utf-8")

    def read_or_default(self, name: str, default: str = "") -> str:
        try:
            return self.read(name)
        except FileNotFoundError:
            return default

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def list(self) -> list[str]:
        if not self.dir.exists():
            return []
        return sorted(p.name for p in self.dir.iterdir() if p.is_file() and not p.name.startswith("."))
