# src/reengage/jobs/completion_job.py

from __future__ import annotations

import logging
import time

from ..core.models import CompletionState, EmailMode
from ..core.ports import Clock, CourseHost
from ..errors import ConfigurationError, PersistenceFailure, StaleReference
from ..notify.messages import NotificationService
from ..tracking.store import ReengageStore
from .job_models import JobOutcome, JobPayload
from .validation import discard_orphan, revalidate

logger = logging.getLogger(__name__)


class CompletionJob:
    """
    Marks a user's activity complete once its duration has elapsed.

    Flow:
    - re-validate the snapshot against live state,
    - set the host completion flag to "complete (pass)",
    - end tracking (or keep the record when a reminder still has to observe
      the completion),
    - send the completion email for on-completion activities.
    """

    name = "completion"

    def __init__(
        self,
        *,
        store: ReengageStore,
        host: CourseHost,
        notifications: NotificationService,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._host = host
        self._notifications = notifications
        self._clock = clock

    def run(self, payload: JobPayload, *, due_at: float) -> JobOutcome:
        try:
            live = revalidate(payload, store=self._store, host=self._host)
        except StaleReference as exc:
            discard_orphan(payload, exc, store=self._store, job_name=self.name)
            return JobOutcome.ABORTED

        activity, progress = live.activity, live.progress
        user_id = progress.user_id

        if activity.email_mode is EmailMode.ON_COMPLETION:
            try:
                activity.validate_templates()
            except ConfigurationError as exc:
                logger.error(
                    "completion: %s; leaving activity=%s progress=%s user=%s untouched",
                    exc,
                    activity.id,
                    progress.id,
                    user_id,
                )
                return JobOutcome.ABORTED

        now = self._clock()
        flag = self._host.upsert_completion_flag(
            activity.module_id, user_id, CompletionState.COMPLETE_PASS, now=now
        )
        self._host.invalidate_completion_cache(user_id, activity.course_id)
        self._host.emit_completion_updated(flag.id, activity.module_id, user_id)

        # Keep the record only while a pending reminder still needs to see the completion.
        # With reminder_count == 0 no reminder job was queued, so nothing would ever delete it.
        keep = (
            activity.email_mode is EmailMode.ON_SCHEDULE
            and activity.reminder_count > 0
            and progress.reminders_sent == 0
        )
        try:
            if keep:
                written = self._store.mark_completed(progress.id)
            else:
                written = self._store.delete_progress(progress.id)
        except PersistenceFailure:
            logger.exception(
                "completion: could not update progress=%s activity=%s user=%s; not emailing",
                progress.id,
                activity.id,
                user_id,
            )
            return JobOutcome.ABORTED

        if not written:
            # Another job consumed the record between validation and now.
            logger.warning(
                "completion: progress=%s vanished before update (activity=%s user=%s); not emailing",
                progress.id,
                activity.id,
                user_id,
            )
            return JobOutcome.ABORTED

        logger.info(
            "completion: activity=%s user=%s complete, progress=%s %s",
            activity.id,
            user_id,
            progress.id,
            "retained" if keep else "deleted",
        )

        if not keep and activity.email_mode is EmailMode.ON_COMPLETION:
            if not self._notifications.notify_user(activity, user_id, due_at=due_at, now=now):
                logger.warning(
                    "completion: email for activity=%s user=%s was not fully delivered", activity.id, user_id
                )

        return JobOutcome.COMPLETED
