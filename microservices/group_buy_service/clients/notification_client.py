"""
Notification Service Client

Client for calling notification_service to deliver group-buy messages.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from core.config.service_config import ServiceConfig

logger = logging.getLogger(__name__)


class NotificationClient:
    """Client for notification_service"""

    def __init__(self, config: Optional[ServiceConfig] = None):
        config = config or ServiceConfig.from_env()
        self.base_url = config.notification_service_url.rstrip("/")
        self.timeout = config.http_timeout_seconds
        self.enabled = config.notifications_enabled

    async def send_notification(
        self,
        user_id: str,
        subject: str,
        content: Dict[str, Any],
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Send a notification via notification_service.

        Args:
            user_id: Recipient user ID
            subject: Message subject line
            content: Message content
            **kwargs: Additional parameters (event_type, etc)

        Returns:
            Notification response with notification_id
        """
        if not self.enabled:
            logger.debug(f"Notifications disabled, not sending '{subject}' to {user_id}")
            return {}

        try:
            request_data = {
                "user_id": user_id,
                "channel_type": "email",
                "subject": subject,
                "content": content,
                **kwargs,
            }

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/notifications",
                    json=request_data,
                )
                response.raise_for_status()
                return response.json()

        except httpx.HTTPStatusError as e:
            logger.error(f"Error sending notification: {e.response.text}")
            raise

        except Exception as e:
            logger.error(f"Error sending notification: {e}")
            raise
