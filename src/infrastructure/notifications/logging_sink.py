import logging
from typing import Optional

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """Delivers notifications as structured log records."""

    def notify(
        self,
        *,
        recipient_ref: str,
        subject: str,
        body: str,
        related_entity_ref: Optional[str] = None,
    ) -> None:
        logger.info(
            "notification.sent",
            extra={
                "extra_fields": {
                    "recipient_ref": recipient_ref,
                    "notification_subject": subject,
                    "notification_body": body,
                    "related_entity_ref": related_entity_ref,
                }
            },
        )
