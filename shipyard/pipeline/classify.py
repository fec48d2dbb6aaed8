# shipyard/pipeline/classify.py
"""
Error classification and self-heal convergence tracking.

classify_error() decides whether retrying a failed stage can help:
infrastructure failures (timeouts, network, OOM) are worth retrying,
configuration failures never are, logic failures only once.
"""

import hashlib
import re
from enum import Enum


class ErrorClass(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    CONFIGURATION = "configuration"
    LOGIC = "logic"
    UNKNOWN = "unknown"


_INFRASTRUCTURE = re.compile(
    r"timeout|timed out|ETIMEDOUT|ECONNREFUSED|ECONNRESET|network|socket hang up|"
    r"\bOOM\b|out of memory|killed|signal 9|Cannot allocate memory|rate limit",
    re.IGNORECASE,
)
_CONFIGURATION = re.compile(
    r"ENOENT|not found|No such file|command not found|MODULE_NOT_FOUND|Cannot find module|"
    r"missing.*env|undefined variable|permission denied|EACCES",
    re.IGNORECASE,
)
_LOGIC = re.compile(
    r"AssertionError|assert.*fail|Expected.*but.*got|TypeError|ReferenceError|SyntaxError|"
    r"CompileError|type mismatch|cannot assign|incompatible type|"
    r"error\[E[0-9]+\]|error: aborting|FAILED.*compile|build failed",
    re.IGNORECASE,
)
_ERROR_LINE = re.compile(r"error|fail|exception|fatal", re.IGNORECASE)

CONVERGENCE_STREAK = 3


def tail_lines(text: str, n: int) -> str:
    lines = text.splitlines()
    return "\n".join(lines[-n:])


def classify_error(text: str | None) -> ErrorClass:
    """Classify failure output by its last 50 lines."""
    if not text:
        return ErrorClass.UNKNOWN
    tail = tail_lines(text, 50)
    if _INFRASTRUCTURE.search(tail):
        return ErrorClass.INFRASTRUCTURE
    if _CONFIGURATION.search(tail):
        return ErrorClass.CONFIGURATION
    if _LOGIC.search(tail):
        return ErrorClass.LOGIC
    return ErrorClass.UNKNOWN


def should_retry(error_class: ErrorClass, previous: ErrorClass | None) -> bool:
    """Retry policy for per-stage retries (the caller enforces the count)."""
    if error_class == ErrorClass.CONFIGURATION:
        return False
    if error_class == ErrorClass.LOGIC:
        return previous != ErrorClass.LOGIC
    return True


def error_signature(text: str) -> str:
    """Stable 16-hex-digit signature of the first error-looking lines of the tail."""
    tail = tail_lines(text or "", 50)
    lines = [line.strip() for line in tail.splitlines() if _ERROR_LINE.search(line)][:3]
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()[:16]


class ConvergenceTracker:
    """Counts consecutive self-heal failures with the same error signature."""

    def __init__(self, streak: int = CONVERGENCE_STREAK) -> None:
        self.streak = streak
        self.last_signature: str | None = None
        self.count = 0

    def observe(self, output: str) -> bool:
        """Record a failure; True once the same signature has repeated `streak` times."""
        signature = error_signature(output)
        if signature == self.last_signature:
            self.count += 1
        else:
            self.last_signature = signature
            self.count = 1
        return self.count >= self.streak
