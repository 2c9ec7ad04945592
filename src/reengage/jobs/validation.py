# src/reengage/jobs/validation.py

from __future__ import annotations

"""
Execution-time re-validation shared by the completion and reminder jobs.

A queued job only carries snapshots; by the time it fires the user may have
been unenrolled or deleted, the activity removed, or the progress record
already consumed by the other job kind. The checks run in a fixed order and
the first failure raises StaleReference.
"""

import logging
from dataclasses import dataclass

from ..core.models import START_CAPABILITY, ActivityDefinition, ProgressRecord
from ..core.ports import CourseHost
from ..errors import PersistenceFailure, StaleReference
from ..tracking.store import ReengageStore
from .job_models import JobPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LiveState:
    """Authoritative rows re-read at execution time."""

    activity: ActivityDefinition
    progress: ProgressRecord


def revalidate(payload: JobPayload, *, store: ReengageStore, host: CourseHost) -> LiveState:
    """
    Re-check, in order:
    1. user still enrolled with the start capability,
    2. progress record still exists,
    3. activity definition still exists,
    4. user not deleted.
    """
    user_id = payload.progress.user_id
    # The module id comes from the snapshot: the live definition may already be gone.
    module_id = payload.activity.module_id

    if not host.is_enrolled_with_capability(module_id, user_id, START_CAPABILITY):
        raise StaleReference(f"user {user_id} is no longer enrolled in module {module_id}")

    progress = store.get_progress(payload.progress_id)
    if progress is None:
        raise StaleReference(f"progress {payload.progress_id} no longer exists", delete_progress=False)

    activity = store.get_activity(payload.activity_id)
    if activity is None:
        raise StaleReference(f"activity {payload.activity_id} no longer exists")

    if host.is_user_deleted(user_id):
        raise StaleReference(f"user {user_id} has been deleted")

    return LiveState(activity=activity, progress=progress)


def discard_orphan(payload: JobPayload, exc: StaleReference, *, store: ReengageStore, job_name: str) -> None:
    """Log a failed re-validation and drop the orphaned progress record when asked to."""
    if not exc.delete_progress:
        logger.info(
            "%s: %s; dropping job (activity=%s progress=%s user=%s)",
            job_name,
            exc,
            payload.activity_id,
            payload.progress_id,
            payload.progress.user_id,
        )
        return

    logger.info(
        "%s: %s; deleting progress record and job (activity=%s progress=%s user=%s)",
        job_name,
        exc,
        payload.activity_id,
        payload.progress_id,
        payload.progress.user_id,
    )
    try:
        store.delete_progress(payload.progress_id)
    except PersistenceFailure:
        logger.exception(
            "%s: failed to delete orphaned progress=%s", job_name, payload.progress_id
        )
