# src/reengage/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..jobs.dispatcher import JobDispatcher
from ..jobs.job_queue import JobQueue
from ..notify.messages import NotificationService
from ..tracking.scanner import EnrollmentScanner
from ..tracking.store import ReengageStore
from .ports import Clock, CourseHost, Notifier


@dataclass
class AppState:
    # Settings object (reengage.config.Settings or a test stand-in).
    settings: Any

    store: ReengageStore
    queue: JobQueue
    host: CourseHost
    notifier: Notifier
    notifications: NotificationService
    scanner: EnrollmentScanner
    dispatcher: JobDispatcher
    clock: Clock
