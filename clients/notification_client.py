"""
clients/notification_client.py
------------------------------
HTTP client for the notification service (subscription reminders).
"""

from typing import Optional

import requests

from models.context import RunContext
from models.outbound import ReminderRequest
from services.errors import ReminderDispatchFailed
from utils.logger import get_logger

logger = get_logger(__name__)


class NotificationClient:
    """Posts reminders to ``<base_url>/notifications``."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_reminder(self, request: ReminderRequest, ctx: RunContext) -> None:
        """
        Send one reminder.

        Raises:
            ReminderDispatchFailed: On transport error, timeout or non-2xx response.
        """
        try:
            resp = self.session.post(
                f"{self.base_url}/notifications",
                json=request.to_payload(),
                headers=ctx.headers(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ReminderDispatchFailed(
                f"Reminder failed for subscription {request.subscription_id}: {e}",
                request.subscription_id,
            ) from e

        logger.info(
            f"Sent reminder for subscription {request.subscription_id} "
            f"to owner {request.owner_id} [cid={ctx.correlation_id}]"
        )

    def close(self) -> None:
        self.session.close()
