"""Notification utilities for aborted sync runs."""

import logging
from typing import Optional

import httpx

from shared.config import get_env

logger = logging.getLogger(__name__)


class NotificationService:
    """Posts aborted sync runs to a webhook when notifications are enabled."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize notification service.

        Args:
            http_client: Client used for the webhook; a short-lived one is
                         created per notification when omitted
        """
        self.notification_enabled = (get_env("ENABLE_NOTIFICATIONS", "false") or "").lower() == "true"
        self.notification_webhook = get_env("NOTIFICATION_WEBHOOK_URL")
        self.http_client = http_client

    async def send_critical_error_notification(
        self,
        sync_id: str,
        user_id: str,
        error_message: str,
        context: Optional[dict] = None
    ) -> bool:
        """
        Send notification for a sync run that was aborted.

        Delivery failures are logged and never affect the run.

        Args:
            sync_id: The sync run ID
            user_id: The user ID
            error_message: The error message recorded for the run
            context: Optional additional context

        Returns:
            True if the webhook accepted the notification
        """
        if not self.notification_enabled:
            logger.info(f"Notifications disabled, skipping notification for sync {sync_id}")
            return False

        notification_message = (
            f"Calendar sync aborted\n"
            f"Sync ID: {sync_id}\n"
            f"User ID: {user_id}\n"
            f"Error: {error_message}\n"
        )
        if context:
            notification_message += f"Context: {context}\n"

        logger.warning(f"CRITICAL ERROR NOTIFICATION: {notification_message}")

        if not self.notification_webhook:
            return False

        payload = {
            "text": notification_message,
            "sync_id": sync_id,
            "user_id": user_id,
            "error": error_message,
        }
        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.notification_webhook, json=payload, timeout=10.0)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.notification_webhook, json=payload, timeout=10.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification for sync {sync_id}: {e}")
            return False

        logger.info(f"Notification sent for sync {sync_id}")
        return True
