# src/reengage/tracking/scanner.py

from __future__ import annotations

"""
Enrollment scanner.

One pass over every active activity definition:
- skip activities in hidden courses (optional),
- find users who may start the activity and are not tracked yet,
- start each of them: progress record + queued completion/reminder jobs +
  an "incomplete" completion flag on the host.

The pass is safe to re-run: the progress table's unique (activity, user) key
and the "already tracked" filter mean a user is never started twice, and a
user whose jobs could not be queued is rolled back so the next pass retries.
"""

import logging
import time
from dataclasses import dataclass, field

from ..core.models import START_CAPABILITY, ActivityDefinition, CompletionState, EmailMode, ProgressRecord
from ..core.ports import Clock, CourseHost
from ..errors import DuplicateProgress, PersistenceFailure
from ..jobs.job_models import KIND_MARK_COMPLETE, KIND_SEND_REMINDER, JobPayload, course_group_key
from ..jobs.job_queue import JobQueue
from .store import ReengageStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScanReport:
    activities_scanned: int = 0
    activities_skipped: int = 0
    users_started: int = 0
    failures: int = 0
    started: list[tuple[int, int]] = field(default_factory=list)  # (activity_id, user_id)


def course_visible(host: CourseHost, course_id: int, *, ignore_category_visibility: bool) -> bool:
    """A course is visible if it and (unless ignored) every category above it are visible."""
    course = host.get_course(course_id)
    if course is None or not course.visible:
        return False
    if ignore_category_visibility:
        return True

    seen: set[int] = set()
    category_id = course.category_id
    while category_id and category_id not in seen:
        seen.add(category_id)
        category = host.get_category(category_id)
        if category is None:
            break
        if not category.visible:
            return False
        category_id = category.parent_id
    return True


class EnrollmentScanner:
    def __init__(
        self,
        *,
        store: ReengageStore,
        queue: JobQueue,
        host: CourseHost,
        clock: Clock = time.time,
        process_visible_courses_only: bool = False,
        ignore_category_visibility: bool = False,
    ) -> None:
        self._store = store
        self._queue = queue
        self._host = host
        self._clock = clock
        self._visible_only = process_visible_courses_only
        self._ignore_categories = ignore_category_visibility

    def active_activities(self) -> list[ActivityDefinition]:
        """Definitions whose course module is not being deleted."""
        return [a for a in self._store.list_activities() if not self._host.is_module_deleting(a.module_id)]

    def scan(self) -> ScanReport:
        # One "now" for the whole pass.
        now = self._clock()
        report = ScanReport()

        activities = self.active_activities()
        if not activities:
            logger.info("No reengagement activities found - nothing to do")
            return report

        for activity in activities:
            if self._visible_only and not course_visible(
                self._host, activity.course_id, ignore_category_visibility=self._ignore_categories
            ):
                logger.info(
                    "Course %s is not visible - skipping activity %s", activity.course_id, activity.id
                )
                report.activities_skipped += 1
                continue

            report.activities_scanned += 1
            try:
                user_ids = self.eligible_user_ids(activity)
            except Exception:
                logger.exception("Eligibility lookup failed for activity %s", activity.id)
                report.failures += 1
                continue

            logger.info("Adding %s in-progress record(s) to activity %s", len(user_ids), activity.id)
            for user_id in user_ids:
                try:
                    record = self._start(activity, user_id, now=now)
                except Exception:
                    logger.exception("Failed to start user %s on activity %s", user_id, activity.id)
                    report.failures += 1
                    continue
                if record is not None:
                    report.users_started += 1
                    report.started.append((activity.id, user_id))

        logger.info(
            "Scan done: scanned=%s skipped=%s started=%s failures=%s",
            report.activities_scanned,
            report.activities_skipped,
            report.users_started,
            report.failures,
        )
        return report

    def eligible_user_ids(self, activity: ActivityDefinition) -> list[int]:
        enrolled = self._host.list_enrolled_user_ids(activity.module_id, START_CAPABILITY)
        if not enrolled:
            return []
        tracked = self._store.tracked_user_ids(activity.id)
        return [uid for uid in enrolled if uid not in tracked and self._can_start(activity, uid)]

    def _can_start(self, activity: ActivityDefinition, user_id: int) -> bool:
        # Any completion flag means the user already started (or finished) this activity.
        if self._host.get_completion_flag(activity.module_id, user_id) is not None:
            return False
        user = self._host.get_user(user_id)
        if user is None or user.deleted:
            return False
        if not user.confirmed:
            # Unconfirmed accounts can't reach the activity; don't email them about it.
            return False
        available, reason = self._host.evaluate_availability(activity.module_id, user_id)
        if not available:
            logger.debug("Activity %s not available to user %s: %s", activity.id, user_id, reason)
            return False
        return True

    def start_user(self, activity: ActivityDefinition, user_id: int) -> ProgressRecord | None:
        """
        Start one user right away (e.g. the user opened the activity before the next pass).

        Returns the new progress record, or None if the user is not eligible or already tracked.
        """
        if not self._host.is_enrolled_with_capability(activity.module_id, user_id, START_CAPABILITY):
            return None
        if self._store.find_progress(activity.id, user_id) is not None:
            return None
        if not self._can_start(activity, user_id):
            return None
        return self._start(activity, user_id, now=self._clock())

    def _start(self, activity: ActivityDefinition, user_id: int, *, now: float) -> ProgressRecord | None:
        due_at = now + activity.duration
        try:
            record = self._store.create_progress(
                activity_id=activity.id,
                user_id=user_id,
                completion_due_at=due_at,
                next_reminder_at=due_at,
            )
        except DuplicateProgress:
            logger.debug("User %s already tracked on activity %s", user_id, activity.id)
            return None

        payload = JobPayload.build(activity, record).to_dict()
        group = course_group_key(activity.course_id)
        queued: list[int] = []
        try:
            # Both jobs fall due together; the reminder is queued first so the FIFO
            # tie-break sends it before completion ends tracking.
            if activity.email_mode is EmailMode.ON_SCHEDULE and activity.reminder_count > 0:
                queued.append(
                    self._queue.enqueue(KIND_SEND_REMINDER, due_at, payload, group_key=group)
                )
            queued.append(self._queue.enqueue(KIND_MARK_COMPLETE, record.completion_due_at, payload, group_key=group))
        except PersistenceFailure:
            self._roll_back(record, queued)
            raise

        self._host.upsert_completion_flag(activity.module_id, user_id, CompletionState.INCOMPLETE, now=now)
        logger.debug(
            "Started user %s on activity %s progress=%s due_at=%s jobs=%s",
            user_id,
            activity.id,
            record.id,
            due_at,
            queued,
        )
        return record

    def _roll_back(self, record: ProgressRecord, queued: list[int]) -> None:
        """Undo a half-started user so the next scan picks them up again."""
        logger.warning(
            "Could not queue jobs for user %s activity %s; rolling back progress %s",
            record.user_id,
            record.activity_id,
            record.id,
        )
        for job_id in queued:
            try:
                self._queue.delete(job_id)
            except Exception:
                logger.exception("Rollback: could not delete queued job %s", job_id)
        try:
            self._store.delete_progress(record.id)
        except Exception:
            logger.exception("Rollback: could not delete progress %s", record.id)
