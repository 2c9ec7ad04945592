# src/reengage/jobs/job_models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ..core.models import ActivityDefinition, ProgressRecord

KIND_MARK_COMPLETE = "mark_complete"
KIND_SEND_REMINDER = "send_reminder"


class JobStatus(StrEnum):
    """
    Queue-side lifecycle.

    Acknowledged jobs are deleted, so there is no "done" status.
    """

    PENDING = "pending"
    CLAIMED = "claimed"

    @classmethod
    def from_db(cls, raw: str | None) -> JobStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class JobOutcome(StrEnum):
    """Terminal states reported by the completion and reminder jobs."""

    COMPLETED = "completed"
    SENT_AND_REARMED = "sent_and_rearmed"
    SENT_FINAL = "sent_final"
    SKIPPED_ALREADY_COMPLETE = "skipped_already_complete"
    ABORTED = "aborted"


@dataclass(slots=True)
class QueuedJob:
    id: int
    kind: str
    due_at: float
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    group_key: str | None
    created_at: float
    claimed_at: float | None = None


@dataclass(frozen=True, slots=True)
class JobPayload:
    """
    Point-in-time snapshot carried by a queued job.

    The snapshots are context only (module id for the enrolment check, display
    fallback). Decisions are made on live rows re-read at execution time.
    """

    activity_id: int
    activity: ActivityDefinition
    progress_id: int
    progress: ProgressRecord

    def to_dict(self) -> dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "activity": self.activity.to_snapshot(),
            "progress_id": self.progress_id,
            "progress": self.progress.to_snapshot(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobPayload:
        return cls(
            activity_id=int(data["activity_id"]),
            activity=ActivityDefinition.from_snapshot(data["activity"]),
            progress_id=int(data["progress_id"]),
            progress=ProgressRecord.from_snapshot(data["progress"]),
        )

    @classmethod
    def build(cls, activity: ActivityDefinition, progress: ProgressRecord) -> JobPayload:
        return cls(
            activity_id=activity.id,
            activity=activity,
            progress_id=progress.id,
            progress=progress,
        )


def course_group_key(course_id: int) -> str:
    """Queue group used to drop every job of a course on reset."""
    return f"course:{course_id}"
