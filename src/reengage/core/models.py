# src/reengage/core/models.py

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import IntEnum, StrEnum
from typing import Any

from ..errors import ConfigurationError

START_CAPABILITY = "start"


class EmailMode(StrEnum):
    NEVER = "never"
    ON_COMPLETION = "on_completion"
    ON_SCHEDULE = "on_schedule"

    @classmethod
    def from_db(cls, raw: str | None) -> EmailMode:
        if not raw:
            return cls.NEVER
        try:
            return cls(raw)
        except ValueError:
            raise ConfigurationError(f"unknown email mode {raw!r}") from None


class RecipientMode(StrEnum):
    USER = "user"
    MANAGER = "manager"
    BOTH = "both"

    @classmethod
    def from_db(cls, raw: str | None) -> RecipientMode:
        if not raw:
            return cls.USER
        try:
            return cls(raw)
        except ValueError:
            raise ConfigurationError(f"unknown recipient mode {raw!r}") from None


class CompletionState(IntEnum):
    """Host completion states (same numbering as the host's completion table)."""

    INCOMPLETE = 0
    COMPLETE = 1
    COMPLETE_PASS = 2
    COMPLETE_FAIL = 3

    @property
    def is_complete(self) -> bool:
        return self is not CompletionState.INCOMPLETE


TEMPLATE_FIELDS = (
    "email_subject",
    "email_content",
    "email_subject_manager",
    "email_content_manager",
    "email_subject_third_party",
    "email_content_third_party",
)


@dataclass(frozen=True, slots=True)
class ActivityDefinition:
    """
    Configuration of one reengagement activity instance.

    Jobs carry a snapshot of this (see to_snapshot) but always re-read the live
    definition before deciding anything.
    """

    id: int
    module_id: int
    course_id: int
    name: str
    duration: int
    email_mode: EmailMode = EmailMode.NEVER
    reminder_count: int = 1
    reminder_delay: int = 0
    suppress_target_module_id: int | None = None
    recipient_mode: RecipientMode = RecipientMode.USER
    third_party_emails: list[str] = field(default_factory=list)

    email_subject: str = ""
    email_content: str = ""
    email_subject_manager: str = ""
    email_content_manager: str = ""
    email_subject_third_party: str = ""
    email_content_third_party: str = ""

    # Absolute timestamp after which no email is useful any more.
    reminder_deadline: float | None = None

    @property
    def sends_email(self) -> bool:
        return self.email_mode is not EmailMode.NEVER

    def validate_templates(self) -> None:
        """
        Raise ConfigurationError if the templates needed for the configured
        recipients are missing.
        """
        if not self.sends_email:
            return
        needed: list[str] = []
        if self.recipient_mode in (RecipientMode.USER, RecipientMode.BOTH):
            needed += ["email_subject", "email_content"]
        if self.recipient_mode in (RecipientMode.MANAGER, RecipientMode.BOTH):
            needed += ["email_subject_manager", "email_content_manager"]
        if self.third_party_emails:
            needed += ["email_subject_third_party", "email_content_third_party"]
        missing = [name for name in needed if not (getattr(self, name) or "").strip()]
        if missing:
            raise ConfigurationError(
                f"activity {self.id} is missing template(s): {', '.join(missing)}"
            )

    def to_snapshot(self) -> dict[str, Any]:
        data = asdict(self)
        data["email_mode"] = self.email_mode.value
        data["recipient_mode"] = self.recipient_mode.value
        return data

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> ActivityDefinition:
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        kwargs["email_mode"] = EmailMode.from_db(kwargs.get("email_mode"))
        kwargs["recipient_mode"] = RecipientMode.from_db(kwargs.get("recipient_mode"))
        kwargs["third_party_emails"] = list(kwargs.get("third_party_emails") or [])
        return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class ProgressRecord:
    id: int
    activity_id: int
    user_id: int
    completion_due_at: float
    next_reminder_at: float | None = None
    reminders_sent: int = 0
    completed: bool = False

    def to_snapshot(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> ProgressRecord:
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class CompletionFlag:
    id: int
    module_id: int
    user_id: int
    state: CompletionState
    time_modified: float


@dataclass(frozen=True, slots=True)
class UserProfile:
    id: int
    email: str
    first_name: str = ""
    last_name: str = ""
    city: str = ""
    institution: str = ""
    department: str = ""
    confirmed: bool = True
    deleted: bool = False
    profile_fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CourseInfo:
    id: int
    short_name: str
    full_name: str
    visible: bool = True
    category_id: int | None = None


@dataclass(frozen=True, slots=True)
class Category:
    id: int
    parent_id: int | None
    visible: bool = True


@dataclass(frozen=True, slots=True)
class Recipient:
    """Where a single notification goes. user_id is None for third-party addresses."""

    email: str
    name: str
    user_id: int | None = None
