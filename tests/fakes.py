# tests/fakes.py

from __future__ import annotations

from dataclasses import dataclass, field

from reengage.core.models import ActivityDefinition, Recipient
from reengage.errors import NotificationFailure


class FakeClock:
    """
    Settable clock for unit tests.

    Call it like time.time(); move it with advance() / set().
    """

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += float(seconds)
        return self.now

    def set(self, now: float) -> None:
        self.now = float(now)


@dataclass(slots=True)
class SentEmail:
    email: str
    name: str
    user_id: int | None
    subject: str
    plain_body: str
    rich_body: str
    activity_id: int


@dataclass(slots=True)
class FakeNotifier:
    """
    Recording Notifier.

    - fail_for: addresses for which send() returns False
    - raise_for: addresses for which send() raises NotificationFailure
    """

    sent: list[SentEmail] = field(default_factory=list)
    fail_for: set[str] = field(default_factory=set)
    raise_for: set[str] = field(default_factory=set)
    attempts: int = 0

    def send(
        self,
        recipient: Recipient,
        subject: str,
        plain_body: str,
        rich_body: str,
        activity: ActivityDefinition,
    ) -> bool:
        self.attempts += 1
        if recipient.email in self.raise_for:
            raise NotificationFailure(f"smtp down for {recipient.email}")
        if recipient.email in self.fail_for:
            return False
        self.sent.append(
            SentEmail(
                email=recipient.email,
                name=recipient.name,
                user_id=recipient.user_id,
                subject=subject,
                plain_body=plain_body,
                rich_body=rich_body,
                activity_id=activity.id,
            )
        )
        return True

    def to(self, email: str) -> list[SentEmail]:
        return [m for m in self.sent if m.email == email]
