# src/reengage/notify/log_notifier.py

from __future__ import annotations

import logging

from ..core.models import ActivityDefinition, Recipient

logger = logging.getLogger(__name__)


class LogNotifier:
    """
    Offline notifier used when no SMTP server is configured.

    Writes each message to the log instead of delivering it, so cron passes can
    be run locally end to end. Always reports success.
    """

    def send(
        self,
        recipient: Recipient,
        subject: str,
        plain_body: str,
        rich_body: str,
        activity: ActivityDefinition,
    ) -> bool:
        logger.info(
            "[offline email] activity=%s to=%s <%s> subject=%r\n%s",
            activity.id,
            recipient.name,
            recipient.email,
            subject,
            plain_body,
        )
        return True
