"""Exit engine exceptions.

Only :class:`ValidationError` is meant to reach a caller (at profile write
time).  The remaining errors are raised inside a sweep and handled per
position: the sweep itself never aborts because of them.
"""

from __future__ import annotations


class ExitEngineError(Exception):
    """Base class for exit engine errors."""


class ValidationError(ExitEngineError, ValueError):
    """A profile or rule is malformed and must be rejected when written."""


class StaleDataError(ExitEngineError):
    """Price data is missing or older than the freshness threshold.

    The position is skipped for the current cycle only.
    """


class ProfileNotFoundError(ExitEngineError):
    """A referenced profile is missing or inactive.

    Profile resolution falls through to the next tier.
    """


class DuplicateIntentError(ExitEngineError):
    """An active intent already exists for the position.

    The new trigger is dropped; the existing intent takes precedence.
    """

    def __init__(self, message: str = "", existing=None) -> None:
        super().__init__(message)
        self.existing = existing


class PersistenceError(ExitEngineError):
    """A state or intent write failed.

    Retried with backoff; once retries are exhausted the position's result for
    the cycle is discarded and re-attempted on the next tick.
    """


class StateConflictError(ExitEngineError):
    """The position state changed since it was read (overlapping cycle)."""


class IntentNotFoundError(ExitEngineError):
    """No intent with the requested id exists."""


class InvalidTransitionError(ExitEngineError):
    """An intent status change is not allowed from its current status."""


__all__ = [
    "ExitEngineError",
    "ValidationError",
    "StaleDataError",
    "ProfileNotFoundError",
    "DuplicateIntentError",
    "PersistenceError",
    "StateConflictError",
    "IntentNotFoundError",
    "InvalidTransitionError",
]
