# src/reengage/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The scanner and the jobs depend on Protocols instead of concrete host/mail
implementations. Capability checks, availability rules, completion tracking
and messaging all belong to the host LMS; the core only calls them.
"""

from collections.abc import Callable
from typing import Protocol

from .models import (
    ActivityDefinition,
    Category,
    CompletionFlag,
    CompletionState,
    CourseInfo,
    Recipient,
    UserProfile,
)

Clock = Callable[[], float]
# Returns "now" as a unix timestamp (time.time in production, a settable fake in tests).


class CourseHost(Protocol):
    """Host-LMS services consumed by the scanner and the jobs."""

    supports_managers: bool

    # Users / enrolment
    def is_enrolled_with_capability(self, module_id: int, user_id: int, capability: str) -> bool: ...
    def list_enrolled_user_ids(self, module_id: int, capability: str) -> list[int]: ...
    def is_user_deleted(self, user_id: int) -> bool: ...
    def get_user(self, user_id: int) -> UserProfile | None: ...
    def get_manager_ids(self, user_id: int) -> list[int]: ...
    def list_user_groups(self, course_id: int, user_id: int) -> list[str]: ...

    # Course structure / availability
    def evaluate_availability(self, module_id: int, user_id: int) -> tuple[bool, str]: ...
    def is_module_deleting(self, module_id: int) -> bool: ...
    def get_course(self, course_id: int) -> CourseInfo | None: ...
    def get_category(self, category_id: int) -> Category | None: ...

    # Completion tracking
    def get_completion_flag(self, module_id: int, user_id: int) -> CompletionFlag | None: ...
    def upsert_completion_flag(
            self,
            module_id: int,
            user_id: int,
            state: CompletionState,
            *,
            now: float,
    ) -> CompletionFlag: ...
    def invalidate_completion_cache(self, user_id: int, course_id: int) -> None: ...
    def emit_completion_updated(self, flag_id: int, module_id: int, user_id: int) -> None: ...


class Notifier(Protocol):
    """
    Delivery port: takes one rendered message and one recipient.

    Returns True when the message was accepted for delivery.
    """

    def send(
            self,
            recipient: Recipient,
            subject: str,
            plain_body: str,
            rich_body: str,
            activity: ActivityDefinition,
    ) -> bool: ...
