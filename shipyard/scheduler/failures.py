# shipyard/scheduler/failures.py
"""Failure classes for reaped jobs and their retry budgets."""

import re
from enum import Enum
from pathlib import Path

from shipyard.config.schema import DaemonConfig


class FailureClass(str, Enum):
    AUTH_ERROR = "auth_error"
    API_ERROR = "api_error"
    INVALID_ISSUE = "invalid_issue"
    CONTEXT_EXHAUSTION = "context_exhaustion"
    BUILD_FAILURE = "build_failure"
    STALLED = "stalled"
    UNKNOWN = "unknown"


_PATTERNS: list[tuple[FailureClass, re.Pattern]] = [
    (
        FailureClass.AUTH_ERROR,
        re.compile(r"invalid api key|authentication|unauthorized|not logged in|403 forbidden", re.I),
    ),
    (
        FailureClass.INVALID_ISSUE,
        re.compile(r"issue not found|ticket #?\d+ not found|no such ticket|could not resolve to an issue", re.I),
    ),
    (
        FailureClass.CONTEXT_EXHAUSTION,
        re.compile(r"context (window|length)|prompt is too long|max(imum)? tokens|token limit", re.I),
    ),
    (
        FailureClass.API_ERROR,
        re.compile(r"api error|rate limit|overloaded|\b5\d\d\b|service unavailable|timed out", re.I),
    ),
    (
        FailureClass.BUILD_FAILURE,
        re.compile(r"build loop stopped|test command exited|tests? failed|build failed", re.I),
    ),
]

# None means "use DaemonConfig.max_retries"
RETRY_BUDGETS: dict[FailureClass, int | None] = {
    FailureClass.AUTH_ERROR: 0,
    FailureClass.INVALID_ISSUE: 0,
    FailureClass.API_ERROR: 4,
    FailureClass.CONTEXT_EXHAUSTION: 2,
    FailureClass.BUILD_FAILURE: 2,
    FailureClass.STALLED: 2,
    FailureClass.UNKNOWN: None,
}


def classify_failure(text: str) -> FailureClass:
    for failure_class, pattern in _PATTERNS:
        if pattern.search(text or ""):
            return failure_class
    return FailureClass.UNKNOWN


def classify_log(path: Path | None, tail_bytes: int = 16_384) -> FailureClass:
    """Classify from the tail of a job's log file."""
    if path is None or not Path(path).exists():
        return FailureClass.UNKNOWN
    with Path(path).open("rb") as f:
        f.seek(0, 2)
        size = f.tell()
        f.seek(max(0, size - tail_bytes))
        tail = f.read().decode("utf-8", errors="replace")
    return classify_failure(tail)


def retry_budget(failure_class: FailureClass, config: DaemonConfig) -> int:
    budget = RETRY_BUDGETS[failure_class]
    return config.max_retries if budget is None else budget
