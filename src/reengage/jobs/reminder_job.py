# src/reengage/jobs/reminder_job.py

from __future__ import annotations

"""
Reminder job.

Each firing sends one reminder and, while reminders are still owed, queues the
next firing at now + reminder_delay. The chain is bounded by the activity's
reminder_count and stops early when:
- the progress record is gone or fails re-validation,
- the completion job has already marked the record completed,
- a send fails.
"""

import logging
import time
from dataclasses import replace

from ..core.models import EmailMode
from ..core.ports import Clock, CourseHost
from ..errors import ConfigurationError, PersistenceFailure, StaleReference
from ..notify.messages import NotificationService
from ..tracking.store import ReengageStore
from .job_models import KIND_SEND_REMINDER, JobOutcome, JobPayload, course_group_key
from .job_queue import JobQueue
from .validation import LiveState, discard_orphan, revalidate

logger = logging.getLogger(__name__)


class ReminderJob:
    name = "reminder"

    def __init__(
        self,
        *,
        store: ReengageStore,
        queue: JobQueue,
        host: CourseHost,
        notifications: NotificationService,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._queue = queue
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

        # Nothing is sent on this path, so it runs before the mode and template checks.
        if progress.completed:
            try:
                self._store.delete_progress(progress.id)
            except PersistenceFailure:
                logger.exception("reminder: failed to delete completed progress=%s", progress.id)
                return JobOutcome.ABORTED
            logger.info(
                "reminder: activity=%s user=%s already complete; tracking ended, no email",
                activity.id,
                user_id,
            )
            return JobOutcome.SKIPPED_ALREADY_COMPLETE

        if activity.email_mode is not EmailMode.ON_SCHEDULE:
            # Definition was switched away from scheduled reminders after this job was queued.
            logger.info(
                "reminder: activity=%s no longer sends scheduled reminders; dropping job (progress=%s user=%s)",
                activity.id,
                progress.id,
                user_id,
            )
            return JobOutcome.ABORTED

        try:
            activity.validate_templates()
        except ConfigurationError as exc:
            logger.error(
                "reminder: %s; leaving activity=%s progress=%s user=%s untouched",
                exc,
                activity.id,
                progress.id,
                user_id,
            )
            return JobOutcome.ABORTED

        now = self._clock()
        before = progress.reminders_sent
        after = before + 1
        next_at = now + activity.reminder_delay if before < activity.reminder_count else None

        try:
            written = self._store.record_reminder_sent(
                progress.id, reminders_sent=after, next_reminder_at=next_at
            )
        except PersistenceFailure:
            logger.exception(
                "reminder: could not record reminder for progress=%s activity=%s user=%s; not emailing",
                progress.id,
                activity.id,
                user_id,
            )
            return JobOutcome.ABORTED
        if not written:
            logger.warning(
                "reminder: progress=%s vanished before update (activity=%s user=%s); not emailing",
                progress.id,
                activity.id,
                user_id,
            )
            return JobOutcome.ABORTED

        # Suppressed or stale sends report success: bookkeeping advances as if sent.
        sent = self._notifications.notify_user(activity, user_id, due_at=due_at, now=now)
        if not sent:
            logger.warning(
                "reminder: send failed for activity=%s user=%s (%s/%s); ending reminder chain",
                activity.id,
                user_id,
                after,
                activity.reminder_count,
            )
            return JobOutcome.SENT_FINAL

        if next_at is None or after >= activity.reminder_count:
            logger.info(
                "reminder: activity=%s user=%s final reminder sent (%s/%s)",
                activity.id,
                user_id,
                after,
                activity.reminder_count,
            )
            return JobOutcome.SENT_FINAL

        return self._rearm(live, next_at=next_at, sent=after)

    def _rearm(self, live: LiveState, *, next_at: float, sent: int) -> JobOutcome:
        activity = live.activity
        progress = replace(live.progress, reminders_sent=sent, next_reminder_at=next_at)
        payload = JobPayload.build(activity, progress)
        try:
            job_id = self._queue.enqueue(
                KIND_SEND_REMINDER, next_at, payload.to_dict(), group_key=course_group_key(activity.course_id)
            )
            self._store.set_next_reminder(progress.id, next_at)
        except PersistenceFailure:
            logger.exception(
                "reminder: could not queue next reminder for activity=%s user=%s; chain ends at %s/%s",
                activity.id,
                progress.user_id,
                sent,
                activity.reminder_count,
            )
            return JobOutcome.SENT_FINAL

        logger.info(
            "reminder: activity=%s user=%s reminder %s/%s sent; next job=%s at %s",
            activity.id,
            progress.user_id,
            sent,
            activity.reminder_count,
            job_id,
            next_at,
        )
        return JobOutcome.SENT_AND_REARMED
