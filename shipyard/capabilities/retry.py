# shipyard/capabilities/retry.py
"""Retry logic for external collaborator calls with exponential backoff."""

import logging
import subprocess

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from shipyard.errors import CapabilityError

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "could not resolve host",
    "connection reset",
    "connection refused",
    "timed out",
    "rate limit",
    "503",
    "502",
)


def is_retryable(exception: BaseException) -> bool:
    """
    Returns True if the exception should be retried.

    Retryable conditions:
    - ConnectionError / TimeoutError / subprocess.TimeoutExpired
    - CapabilityError flagged transient, or whose message names a network
      or rate-limit failure
    """
    if isinstance(exception, (ConnectionError, TimeoutError, subprocess.TimeoutExpired)):
        return True

    if isinstance(exception, CapabilityError):
        if exception.transient:
            return True
        message = str(exception).lower()
        return any(marker in message for marker in _TRANSIENT_MARKERS)

    return False


# Tenacity retry decorator for git / tracker calls
external_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=60),
    retry=retry_if_exception(is_retryable),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
