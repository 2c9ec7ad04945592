# src/reengage/notify/messages.py

from __future__ import annotations

"""
Notification rendering and fan-out.

The jobs decide *whether* a notification is due; this module decides whether
it is still worth sending (suppression target, staleness, deadline), renders
the activity templates for the user, and fans the message out to managers,
the user and third-party addresses through the injected Notifier.
"""

import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup
from email_validator import EmailNotValidError, validate_email

from ..core.models import TEMPLATE_FIELDS, ActivityDefinition, Recipient, RecipientMode, UserProfile
from ..core.ports import CourseHost, Notifier
from ..errors import NotificationFailure

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
DEFAULT_STALE_GRACE_SECONDS = 2 * DAY_SECONDS

_LEFTOVER_PROFILE_FIELD = re.compile(r"%profilefield_[A-Za-z0-9_]+%")


@dataclass(frozen=True, slots=True)
class RenderedMessages:
    """Template fields after placeholder substitution."""

    email_subject: str
    email_content: str
    email_subject_manager: str
    email_content_manager: str
    email_subject_third_party: str
    email_content_third_party: str


def html_to_text(html: str) -> str:
    """Plain-text alternative of a rich (HTML) body."""
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text("\n", strip=True)


def template_variables(
    activity: ActivityDefinition,
    user: UserProfile,
    *,
    host: CourseHost,
) -> dict[str, str]:
    course = host.get_course(activity.course_id)
    groups = host.list_user_groups(activity.course_id, user.id)

    variables = {
        "%courseshortname%": course.short_name if course else "",
        "%coursefullname%": course.full_name if course else "",
        "%courseid%": str(activity.course_id),
        "%userfirstname%": user.first_name,
        "%userlastname%": user.last_name,
        "%userid%": str(user.id),
        "%usercity%": user.city,
        "%userinstitution%": user.institution,
        "%userdepartment%": user.department,
        "%usergroups%": ", ".join(sorted(groups)),
    }
    for shortname, value in user.profile_fields.items():
        variables[f"%profilefield_{shortname}%"] = value
    return variables


def render_templates(
    activity: ActivityDefinition,
    user: UserProfile,
    *,
    host: CourseHost,
) -> RenderedMessages:
    variables = template_variables(activity, user, host=host)

    rendered: dict[str, str] = {}
    for name in TEMPLATE_FIELDS:
        text = getattr(activity, name) or ""
        for placeholder, value in variables.items():
            text = text.replace(placeholder, value)
        # Profile fields the user never filled in render as empty.
        rendered[name] = _LEFTOVER_PROFILE_FIELD.sub("", text)
    return RenderedMessages(**rendered)


def _display_name(user: UserProfile) -> str:
    name = f"{user.first_name} {user.last_name}".strip()
    return name or user.email


class NotificationService:
    """
    Decides whether a due notification is still sent, then fans it out.

    notify_user() returns True when nothing needs retrying:
    - the message was delivered to every target, or
    - it was deliberately not sent (user deleted, target activity complete,
      stale, past the activity's deadline).
    It returns False when at least one target failed; every target is still tried.
    """

    def __init__(
        self,
        host: CourseHost,
        notifier: Notifier,
        *,
        stale_grace_seconds: float = DEFAULT_STALE_GRACE_SECONDS,
    ) -> None:
        self._host = host
        self._notifier = notifier
        self._stale_grace = float(stale_grace_seconds)

    def target_complete(self, activity: ActivityDefinition, user_id: int) -> bool:
        target = activity.suppress_target_module_id
        if not target:
            return False
        flag = self._host.get_completion_flag(target, user_id)
        return flag is not None and flag.state.is_complete

    def should_send(self, activity: ActivityDefinition, user_id: int, *, due_at: float | None, now: float) -> bool:
        if self.target_complete(activity, user_id):
            logger.info(
                "User %s has completed target module %s; suppressing email for activity %s",
                user_id,
                activity.suppress_target_module_id,
                activity.id,
            )
            return False
        # Where cron has not run for a while, don't flood users with ancient reminders.
        if due_at is not None and due_at + self._stale_grace < now:
            logger.info(
                "Email for user %s activity %s not sent: was due more than %ss ago",
                user_id,
                activity.id,
                int(self._stale_grace),
            )
            return False
        if activity.reminder_deadline is not None and activity.reminder_deadline < now:
            logger.info(
                "Email for user %s activity %s not sent: past usefulness deadline", user_id, activity.id
            )
            return False
        return True

    def notify_user(
        self,
        activity: ActivityDefinition,
        user_id: int,
        *,
        due_at: float | None,
        now: float,
    ) -> bool:
        user = self._host.get_user(user_id)
        if user is None or user.deleted:
            return True
        if not self.should_send(activity, user_id, due_at=due_at, now=now):
            return True

        logger.info("Sending email for activity %s to user %s", activity.id, user_id)
        messages = render_templates(activity, user, host=self._host)
        ok = True

        if activity.recipient_mode in (RecipientMode.MANAGER, RecipientMode.BOTH):
            ok = self._send_to_managers(activity, user, messages) and ok

        if activity.recipient_mode in (RecipientMode.USER, RecipientMode.BOTH):
            recipient = Recipient(email=user.email, name=_display_name(user), user_id=user.id)
            ok = self._send(recipient, messages.email_subject, messages.email_content, activity) and ok

        for address in activity.third_party_emails:
            address = address.strip()
            if not address:
                continue
            try:
                validate_email(address, check_deliverability=False)
            except EmailNotValidError:
                logger.warning("Invalid third-party email %r for activity %s; skipping", address, activity.id)
                continue
            recipient = Recipient(email=address, name=address)
            ok = (
                self._send(
                    recipient,
                    messages.email_subject_third_party,
                    messages.email_content_third_party,
                    activity,
                )
                and ok
            )

        if not ok:
            logger.warning("Partial notification failure for activity %s user %s", activity.id, user_id)
        return ok

    def _send_to_managers(self, activity: ActivityDefinition, user: UserProfile, messages: RenderedMessages) -> bool:
        if not getattr(self._host, "supports_managers", False):
            logger.debug("Host has no management hierarchy; skipping manager emails")
            return True
        manager_ids = self._host.get_manager_ids(user.id)
        if not manager_ids:
            logger.info("User %s has no managers; not sending any manager emails", user.id)
            return True

        ok = True
        for manager_id in manager_ids:
            manager = self._host.get_user(manager_id)
            if manager is None or manager.deleted:
                logger.info("Manager %s of user %s is gone; skipping", manager_id, user.id)
                continue
            recipient = Recipient(email=manager.email, name=_display_name(manager), user_id=manager.id)
            ok = self._send(recipient, messages.email_subject_manager, messages.email_content_manager, activity) and ok
        return ok

    def _send(self, recipient: Recipient, subject: str, rich_body: str, activity: ActivityDefinition) -> bool:
        try:
            sent = bool(
                self._notifier.send(recipient, subject, html_to_text(rich_body), rich_body, activity)
            )
        except NotificationFailure as exc:
            logger.warning("Notification to %s for activity %s failed: %s", recipient.email, activity.id, exc)
            sent = False
        except Exception:
            logger.exception("Notifier raised sending to %s for activity %s", recipient.email, activity.id)
            sent = False
        if not sent:
            logger.warning("Failed to send email to %s for activity %s", recipient.email, activity.id)
        return sent
