# src/reengage/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (stores/host/notifier/jobs).
"""

from __future__ import annotations

import logging
import time

from ..config import get_settings
from ..core.ports import Clock, CourseHost, Notifier
from ..core.state import AppState
from ..host.sqlite_host import SqliteCourseHost
from ..jobs.completion_job import CompletionJob
from ..jobs.dispatcher import JobDispatcher
from ..jobs.job_models import KIND_MARK_COMPLETE, KIND_SEND_REMINDER
from ..jobs.job_queue import JobQueue
from ..jobs.reminder_job import ReminderJob
from ..notify.log_notifier import LogNotifier
from ..notify.messages import NotificationService
from ..notify.smtp import SmtpNotifier
from ..tracking.scanner import EnrollmentScanner
from ..tracking.store import ReengageStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.host_db_path.parent.mkdir(parents=True, exist_ok=True)


def build_notifier(settings) -> Notifier:
    if not getattr(settings, "smtp_host", ""):
        logger.info("No SMTP host configured; emails are written to the log")
        return LogNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username or None,
        password=settings.smtp_password or None,
        from_address=settings.smtp_from,
        use_ssl=settings.smtp_use_ssl,
    )


def create_initial_state(
    *,
    settings=None,
    host: CourseHost | None = None,
    notifier: Notifier | None = None,
    clock: Clock = time.time,
) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings (and the host/notifier/clock) injectable makes the app easy to test.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = ReengageStore(settings.db_path)
    queue = JobQueue(settings.db_path)
    if host is None:
        host = SqliteCourseHost(settings.host_db_path)
    if notifier is None:
        notifier = build_notifier(settings)

    notifications = NotificationService(
        host,
        notifier,
        stale_grace_seconds=settings.stale_grace_seconds,
    )
    scanner = EnrollmentScanner(
        store=store,
        queue=queue,
        host=host,
        clock=clock,
        process_visible_courses_only=settings.process_visible_courses_only,
        ignore_category_visibility=settings.ignore_category_visibility,
    )
    handlers = {
        KIND_MARK_COMPLETE: CompletionJob(store=store, host=host, notifications=notifications, clock=clock),
        KIND_SEND_REMINDER: ReminderJob(
            store=store, queue=queue, host=host, notifications=notifications, clock=clock
        ),
    }
    dispatcher = JobDispatcher(
        queue,
        handlers,
        clock=clock,
        retry_delay_seconds=settings.retry_delay_seconds,
        max_attempts=settings.max_attempts,
        batch_limit=settings.dispatch_batch_limit,
    )

    return AppState(
        settings=settings,
        store=store,
        queue=queue,
        host=host,
        notifier=notifier,
        notifications=notifications,
        scanner=scanner,
        dispatcher=dispatcher,
        clock=clock,
    )
