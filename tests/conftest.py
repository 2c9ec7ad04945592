# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace

import pytest

from reengage.cli.bootstrap import create_initial_state
from reengage.core.models import ActivityDefinition, EmailMode
from reengage.core.state import AppState
from reengage.host.sqlite_host import SqliteCourseHost
from reengage.jobs.job_models import JobPayload

from .fakes import FakeClock, FakeNotifier

COURSE_ID = 10
MODULE_ID = 100
TARGET_MODULE_ID = 200
DAY = 86400


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with create_initial_state().

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the environment.
    """
    return SimpleNamespace(
        app_name="reengage-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        db_path=tmp_path / "reengage.sqlite3",
        host_db_path=tmp_path / "host.sqlite3",
        process_visible_courses_only=False,
        ignore_category_visibility=False,
        stale_grace_seconds=2 * DAY,
        cron_interval_seconds=0.01,
        retry_delay_seconds=60.0,
        max_attempts=3,
        claim_lease_seconds=3600.0,
        dispatch_batch_limit=100,
        smtp_host="",
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def host(settings: SimpleNamespace) -> SqliteCourseHost:
    """
    Reference host with one visible course, the tracked module, a second
    (suppression target) module, and two enrolled users.
    """
    h = SqliteCourseHost(settings.host_db_path)
    h.seed_category(1)
    h.seed_course(COURSE_ID, short_name="BIO101", full_name="Intro to Biology", category_id=1)
    h.seed_module(MODULE_ID, course_id=COURSE_ID)
    h.seed_module(TARGET_MODULE_ID, course_id=COURSE_ID)
    h.seed_user(1, email="ann@example.com", first_name="Ann", last_name="Lee", city="Oslo")
    h.seed_user(2, email="bob@example.com", first_name="Bob", last_name="Ray")
    h.enrol(COURSE_ID, 1)
    h.enrol(COURSE_ID, 2)
    return h


@pytest.fixture()
def state(settings: SimpleNamespace, host: SqliteCourseHost, notifier: FakeNotifier, clock: FakeClock) -> AppState:
    """
    AppState wired with the fake notifier and clock.

    NOTE: We keep real SQLite stores (and the SQLite reference host) because
    their correctness is part of what we want to test.
    """
    return create_initial_state(settings=settings, host=host, notifier=notifier, clock=clock)


BASE_ACTIVITY = ActivityDefinition(
    id=0,
    module_id=MODULE_ID,
    course_id=COURSE_ID,
    name="Come back!",
    duration=DAY,
    email_mode=EmailMode.ON_SCHEDULE,
    reminder_count=2,
    reminder_delay=3600,
    email_subject="Reminder for %userfirstname%",
    email_content="<p>Hi %userfirstname%, %coursefullname% misses you.</p>",
    email_subject_manager="About %userfirstname% %userlastname%",
    email_content_manager="<p>%userfirstname% has been inactive in %courseshortname%.</p>",
    email_subject_third_party="Inactivity: %userid%",
    email_content_third_party="<p>User %userid% in course %courseid%.</p>",
)


@pytest.fixture()
def make_activity(state: AppState) -> Callable[..., ActivityDefinition]:
    """Store an activity built from BASE_ACTIVITY with overrides; returns the stored definition."""

    def _make(**overrides) -> ActivityDefinition:
        activity_id = state.store.add_activity(replace(BASE_ACTIVITY, **overrides))
        stored = state.store.get_activity(activity_id)
        assert stored is not None
        return stored

    return _make


def queued_payload(state: AppState, kind: str, *, activity_id: int, user_id: int) -> tuple[JobPayload, float]:
    """(JobPayload, due_at) of the single queued job of `kind` for this activity/user."""
    matches = [
        job
        for job in state.queue.list_jobs(kind=kind)
        if job.payload["activity_id"] == activity_id and job.payload["progress"]["user_id"] == user_id
    ]
    assert len(matches) == 1, matches
    return JobPayload.from_dict(matches[0].payload), matches[0].due_at
