"""Exceptions raised by the activity log.

A broken chain is not an error: verification reports it as a
``VerificationResult`` with ``valid=False``.  The exceptions here cover
configuration problems and operational failures only.
"""

from __future__ import annotations


class ActivityLogError(Exception):
    """Base class for activity log errors."""


class ConfigurationError(ActivityLogError):
    """Required configuration (e.g. the primary signing key) is missing."""


class AppendError(ActivityLogError):
    """An entry could not be appended to the chain."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class ChainStorageError(ActivityLogError):
    """The backing store failed while reading or maintaining the chain."""
