# src/reengage/errors.py

"""
Error taxonomy.

Every error here is non-fatal to a cron pass: jobs and the scanner catch them
at their own boundary and log with activity/progress/user context.
"""

from __future__ import annotations


class ReengageError(Exception):
    """Base class for all reengage errors."""


class StaleReference(ReengageError):
    """
    A user/activity/enrollment/progress record vanished between enqueue and dispatch.

    `delete_progress` tells the job boundary whether the orphaned ProgressRecord
    should be removed (False when the record itself is the thing that is missing).
    """

    def __init__(self, message: str, *, delete_progress: bool = True) -> None:
        super().__init__(message)
        self.delete_progress = delete_progress


class PersistenceFailure(ReengageError):
    """A store write failed."""


class DuplicateProgress(PersistenceFailure):
    """A ProgressRecord already exists for the (activity, user) pair."""


class NotificationFailure(ReengageError):
    """A notifier could not deliver a message."""


class ConfigurationError(ReengageError):
    """Malformed activity definition (e.g. a required template is empty)."""
