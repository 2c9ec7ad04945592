# src/reengage/notify/smtp.py

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from ..core.models import ActivityDefinition, Recipient
from ..errors import NotificationFailure

logger = logging.getLogger(__name__)


class SmtpNotifier:
    """
    Notifier that delivers each message with one SMTP session.

    SSL is used when use_ssl is set, STARTTLS otherwise. Connection and protocol
    errors are raised as NotificationFailure; the notification service logs them
    per recipient and carries on with the remaining targets.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_address: str = "",
        use_ssl: bool = False,
        timeout: float = 30.0,
    ) -> None:
        if not host:
            raise ValueError("SMTP host is required")
        self._host = host
        self._port = int(port) or (465 if use_ssl else 587)
        self._username = username
        self._password = password
        self._from = from_address or (username or "")
        self._use_ssl = use_ssl
        self._timeout = timeout

    def _build_message(
        self,
        recipient: Recipient,
        subject: str,
        plain_body: str,
        rich_body: str,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = formataddr((recipient.name, recipient.email))
        msg["Message-ID"] = make_msgid(domain=self._host)
        msg.set_content(plain_body or "")
        if rich_body:
            msg.add_alternative(rich_body, subtype="html")
        return msg

    def send(
        self,
        recipient: Recipient,
        subject: str,
        plain_body: str,
        rich_body: str,
        activity: ActivityDefinition,
    ) -> bool:
        msg = self._build_message(recipient, subject, plain_body, rich_body)
        try:
            if self._use_ssl:
                smtp_conn: smtplib.SMTP = smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
            else:
                smtp_conn = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
            with smtp_conn as smtp:
                smtp.ehlo()
                if not self._use_ssl:
                    smtp.starttls()
                    smtp.ehlo()
                if self._username and self._password:
                    smtp.login(self._username, self._password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationFailure(
                f"SMTP send via {self._host}:{self._port} failed for activity {activity.id}: {exc}"
            ) from exc

        logger.debug("SMTP message sent to %s activity=%s", recipient.email, activity.id)
        return True
