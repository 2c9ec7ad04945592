# tests/test_reminder_job.py

from __future__ import annotations

from dataclasses import replace

import pytest

from reengage.core.models import CompletionState, EmailMode
from reengage.core.state import AppState
from reengage.jobs.completion_job import CompletionJob
from reengage.jobs.job_models import KIND_MARK_COMPLETE, KIND_SEND_REMINDER, JobOutcome, JobPayload
from reengage.jobs.reminder_job import ReminderJob

from .conftest import COURSE_ID, DAY, TARGET_MODULE_ID, queued_payload
from .fakes import FakeClock, FakeNotifier


@pytest.fixture()
def reminder(state: AppState) -> ReminderJob:
    return ReminderJob(
        store=state.store,
        queue=state.queue,
        host=state.host,
        notifications=state.notifications,
        clock=state.clock,
    )


def _reminders_for(state: AppState, user_id: int):
    return [j for j in state.queue.list_jobs(kind=KIND_SEND_REMINDER) if j.payload["progress"]["user_id"] == user_id]


def test_exactly_reminder_count_reminders_spaced_by_delay(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity(reminder_count=3, reminder_delay=3600)
    t0 = clock()
    state.scanner.scan()

    fired: list[float] = []
    outcomes: list[JobOutcome] = []
    for _ in range(10):
        jobs = _reminders_for(state, 1)
        if not jobs:
            break
        [job] = jobs
        clock.set(job.due_at)
        fired.append(job.due_at)
        outcomes.append(reminder.run(JobPayload.from_dict(job.payload), due_at=job.due_at))
        state.queue.ack(job.id)

    assert fired == [t0 + DAY, t0 + DAY + 3600, t0 + DAY + 7200]
    assert outcomes == [JobOutcome.SENT_AND_REARMED, JobOutcome.SENT_AND_REARMED, JobOutcome.SENT_FINAL]
    assert len(notifier.to("ann@example.com")) == 3
    record = state.store.find_progress(activity.id, 1)
    assert record.reminders_sent == 3
    assert _reminders_for(state, 1) == []


def test_rearm_persists_next_time_and_fresh_snapshot(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock
) -> None:
    activity = make_activity(reminder_count=2, reminder_delay=3600)
    state.scanner.scan()
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at)

    assert reminder.run(payload, due_at=due_at) is JobOutcome.SENT_AND_REARMED

    record = state.store.get_progress(payload.progress_id)
    assert record.next_reminder_at == due_at + 3600
    [next_job] = [j for j in _reminders_for(state, 1) if j.due_at > due_at]
    assert next_job.payload["progress"]["reminders_sent"] == 1
    assert next_job.group_key == f"course:{COURSE_ID}"


def test_completion_halts_pending_reminder(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity()
    state.scanner.scan()
    completion = CompletionJob(store=state.store, host=state.host, notifications=state.notifications, clock=clock)
    c_payload, c_due = queued_payload(state, KIND_MARK_COMPLETE, activity_id=activity.id, user_id=1)
    r_payload, r_due = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.advance(DAY)

    assert completion.run(c_payload, due_at=c_due) is JobOutcome.COMPLETED
    assert reminder.run(r_payload, due_at=r_due) is JobOutcome.SKIPPED_ALREADY_COMPLETE

    assert state.store.get_progress(r_payload.progress_id) is None
    assert notifier.attempts == 0
    assert len(_reminders_for(state, 1)) == 1  # only the original, never re-armed


def test_suppressed_reminder_still_advances_chain(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity(suppress_target_module_id=TARGET_MODULE_ID)
    state.scanner.scan()
    state.host.upsert_completion_flag(TARGET_MODULE_ID, 1, CompletionState.COMPLETE, now=clock())
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at)

    assert reminder.run(payload, due_at=due_at) is JobOutcome.SENT_AND_REARMED

    assert notifier.attempts == 0
    assert state.store.get_progress(payload.progress_id).reminders_sent == 1
    assert len(_reminders_for(state, 1)) == 2


def test_stale_reminder_is_not_sent_but_counted(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity()
    state.scanner.scan()
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at + 2 * DAY + 1)

    assert reminder.run(payload, due_at=due_at) is JobOutcome.SENT_AND_REARMED

    assert notifier.attempts == 0
    record = state.store.get_progress(payload.progress_id)
    assert record.reminders_sent == 1
    assert record.next_reminder_at == clock() + activity.reminder_delay


def test_reminder_within_grace_window_is_sent(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity()
    state.scanner.scan()
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at + 2 * DAY - 1)

    reminder.run(payload, due_at=due_at)

    assert len(notifier.to("ann@example.com")) == 1


def test_past_deadline_is_not_sent(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity(reminder_deadline=clock() + 60)
    state.scanner.scan()
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at)

    reminder.run(payload, due_at=due_at)

    assert notifier.attempts == 0
    assert state.store.get_progress(payload.progress_id).reminders_sent == 1


def test_failed_send_ends_chain(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity(reminder_count=3)
    state.scanner.scan()
    notifier.fail_for.add("ann@example.com")
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at)

    assert reminder.run(payload, due_at=due_at) is JobOutcome.SENT_FINAL

    assert state.store.get_progress(payload.progress_id).reminders_sent == 1
    assert len(_reminders_for(state, 1)) == 1


def test_unenrolled_user_aborts_and_cleans_up(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity()
    state.scanner.scan()
    state.host.unenrol(COURSE_ID, 1)
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at)

    assert reminder.run(payload, due_at=due_at) is JobOutcome.ABORTED

    assert state.store.get_progress(payload.progress_id) is None
    assert notifier.attempts == 0


def test_definition_switched_off_schedule_drops_job(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier
) -> None:
    activity = make_activity()
    state.scanner.scan()
    state.store.update_activity(replace(activity, email_mode=EmailMode.NEVER))
    payload, due_at = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.set(due_at)

    assert reminder.run(payload, due_at=due_at) is JobOutcome.ABORTED

    assert state.store.get_progress(payload.progress_id).reminders_sent == 0
    assert notifier.attempts == 0


@pytest.mark.parametrize(
    "edit",
    [
        {"email_subject": ""},
        {"email_mode": EmailMode.NEVER},
    ],
)
def test_completed_record_is_removed_after_definition_edit(
    state: AppState, reminder: ReminderJob, make_activity, clock: FakeClock, notifier: FakeNotifier, edit
) -> None:
    activity = make_activity()
    state.scanner.scan()
    completion = CompletionJob(store=state.store, host=state.host, notifications=state.notifications, clock=clock)
    c_payload, c_due = queued_payload(state, KIND_MARK_COMPLETE, activity_id=activity.id, user_id=1)
    r_payload, r_due = queued_payload(state, KIND_SEND_REMINDER, activity_id=activity.id, user_id=1)
    clock.advance(DAY)
    assert completion.run(c_payload, due_at=c_due) is JobOutcome.COMPLETED
    assert state.store.get_progress(r_payload.progress_id).completed is True

    # The definition changes while the completed record waits for its reminder job.
    state.store.update_activity(replace(activity, **edit))

    assert reminder.run(r_payload, due_at=r_due) is JobOutcome.SKIPPED_ALREADY_COMPLETE
    assert state.store.get_progress(r_payload.progress_id) is None
    assert notifier.attempts == 0
