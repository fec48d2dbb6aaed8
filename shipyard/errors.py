# shipyard/errors.py
"""
Exception hierarchy for shipyard.

Stage failures are not exceptions: the stage runner turns them into failed
StageResults. The classes here cover configuration problems, state and lock
violations, and external collaborators that could not be reached.
"""


class ShipyardError(Exception):
    """Base class for every shipyard error."""


class ConfigError(ShipyardError):
    """Invalid configuration or input. Raised before anything is written."""


class TemplateError(ConfigError):
    """A pipeline template is missing or malformed."""


class InvalidTransitionError(ShipyardError):
    """A run status change that the state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target


class StateDocumentError(ShipyardError):
    """A state document is missing, unparseable or fails validation."""


class LockError(ShipyardError):
    """Base class for lock acquisition failures."""


class LockTimeoutError(LockError):
    """The lock was not acquired within the timeout."""


class LockHeldError(LockError):
    """The lock is held by a live process."""

    def __init__(self, message: str, holder: dict | None = None) -> None:
        super().__init__(message)
        self.holder = holder or {}


class CapabilityError(ShipyardError):
    """
    An external collaborator (agent, VCS, tracker, cost reporter) failed.

    Args:
        message: Human-readable error
        transient: True when retrying may succeed (network, rate limit, timeout)
    """

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class SpawnError(ShipyardError):
    """The scheduler could not start a pipeline process."""
