# tests/test_notifications.py

from __future__ import annotations

from dataclasses import replace

import pytest

from reengage.core.models import CompletionState, RecipientMode
from reengage.host.sqlite_host import SqliteCourseHost
from reengage.notify.messages import NotificationService, html_to_text, render_templates

from .conftest import BASE_ACTIVITY, COURSE_ID, DAY, TARGET_MODULE_ID
from .fakes import FakeNotifier

NOW = 1_700_000_000.0


@pytest.fixture()
def service(host: SqliteCourseHost, notifier: FakeNotifier) -> NotificationService:
    host.seed_user(9, email="boss@example.com", first_name="Meg", last_name="Boss")
    host.add_manager(1, 9)
    return NotificationService(host, notifier, stale_grace_seconds=2 * DAY)


def test_fan_out_order_and_targets(service: NotificationService, notifier: FakeNotifier) -> None:
    activity = replace(
        BASE_ACTIVITY,
        id=5,
        recipient_mode=RecipientMode.BOTH,
        third_party_emails=["hr@acme-corp.org", "not-an-email", " "],
    )

    assert service.notify_user(activity, 1, due_at=NOW, now=NOW) is True

    assert [m.email for m in notifier.sent] == ["boss@example.com", "ann@example.com", "hr@acme-corp.org"]
    manager_mail, user_mail, third_mail = notifier.sent
    assert manager_mail.subject == "About Ann Lee"
    assert manager_mail.user_id == 9
    assert user_mail.subject == "Reminder for Ann"
    assert third_mail.subject == "Inactivity: 1"
    assert third_mail.user_id is None
    assert all(m.activity_id == 5 for m in notifier.sent)


def test_partial_failure_is_reported_but_every_target_tried(
    service: NotificationService, notifier: FakeNotifier
) -> None:
    activity = replace(BASE_ACTIVITY, recipient_mode=RecipientMode.BOTH, third_party_emails=["hr@acme-corp.org"])
    notifier.fail_for.add("boss@example.com")
    notifier.raise_for.add("ann@example.com")

    assert service.notify_user(activity, 1, due_at=NOW, now=NOW) is False

    assert notifier.attempts == 3
    assert [m.email for m in notifier.sent] == ["hr@acme-corp.org"]


def test_manager_mode_without_hierarchy_sends_nothing(host: SqliteCourseHost, notifier: FakeNotifier) -> None:
    host.add_manager(1, 2)
    host.supports_managers = False
    service = NotificationService(host, notifier)
    activity = replace(BASE_ACTIVITY, recipient_mode=RecipientMode.MANAGER)

    assert service.notify_user(activity, 1, due_at=NOW, now=NOW) is True
    assert notifier.attempts == 0


def test_deleted_or_missing_user_is_success_without_sending(
    service: NotificationService, host: SqliteCourseHost, notifier: FakeNotifier
) -> None:
    host.set_user_deleted(2)

    assert service.notify_user(BASE_ACTIVITY, 2, due_at=NOW, now=NOW) is True
    assert service.notify_user(BASE_ACTIVITY, 404, due_at=NOW, now=NOW) is True
    assert notifier.attempts == 0


def test_suppression_target_complete_skips_send(
    service: NotificationService, host: SqliteCourseHost, notifier: FakeNotifier
) -> None:
    activity = replace(BASE_ACTIVITY, suppress_target_module_id=TARGET_MODULE_ID)

    host.upsert_completion_flag(TARGET_MODULE_ID, 1, CompletionState.INCOMPLETE, now=NOW)
    assert service.should_send(activity, 1, due_at=NOW, now=NOW) is True

    host.upsert_completion_flag(TARGET_MODULE_ID, 1, CompletionState.COMPLETE_FAIL, now=NOW)
    assert service.should_send(activity, 1, due_at=NOW, now=NOW) is False
    assert service.notify_user(activity, 1, due_at=NOW, now=NOW) is True
    assert notifier.attempts == 0


def test_staleness_and_deadline(service: NotificationService) -> None:
    assert service.should_send(BASE_ACTIVITY, 1, due_at=NOW - 2 * DAY, now=NOW) is True
    assert service.should_send(BASE_ACTIVITY, 1, due_at=NOW - 2 * DAY - 1, now=NOW) is False
    assert service.should_send(BASE_ACTIVITY, 1, due_at=None, now=NOW) is True

    with_deadline = replace(BASE_ACTIVITY, reminder_deadline=NOW - 1)
    assert service.should_send(with_deadline, 1, due_at=NOW, now=NOW) is False


def test_template_placeholders(host: SqliteCourseHost) -> None:
    host.seed_user(
        7,
        email="cy@example.com",
        first_name="Cy",
        last_name="Tan",
        city="Lima",
        institution="Uni",
        department="Physics",
        profile_fields={"team": "Falcons"},
    )
    host.add_group_member(COURSE_ID, 7, "Red")
    host.add_group_member(COURSE_ID, 7, "Blue")
    activity = replace(
        BASE_ACTIVITY,
        email_subject="%courseshortname% / %courseid% / %userid%",
        email_content=(
            "%userfirstname% %userlastname%, %usercity%, %userinstitution%, %userdepartment%, "
            "[%usergroups%] %profilefield_team% %profilefield_missing%."
        ),
        email_subject_manager="%coursefullname%",
    )

    rendered = render_templates(activity, host.get_user(7), host=host)

    assert rendered.email_subject == f"BIO101 / {COURSE_ID} / 7"
    assert rendered.email_content == "Cy Tan, Lima, Uni, Physics, [Blue, Red] Falcons ."
    assert rendered.email_subject_manager == "Intro to Biology"


def test_html_to_text() -> None:
    assert html_to_text("") == ""
    assert html_to_text("<p>Hello <b>there</b></p><p>Bye</p>") == "Hello\nthere\nBye"
