"""
Notification Service Client

Email sender backed by notification_service; the provider integration
itself lives there.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..protocols import TransientDeliveryError

logger = logging.getLogger(__name__)


class NotificationClient:
    """Client for notification_service"""

    def __init__(self, base_url: str = "http://localhost:8270", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def send(
        self,
        recipient_email: str,
        subject: str,
        html: str,
        text: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """
        Send one campaign email via notification_service.

        Returns:
            notification_id assigned by notification_service

        Raises:
            TransientDeliveryError: 5xx, 429 or a network error
            httpx.HTTPStatusError: any other rejected request
        """
        request_data: Dict[str, Any] = {
            "channel_type": "email",
            "recipient": recipient_email,
            "content": {
                "subject": subject,
                "body_html": html,
                "body_text": text,
            },
            "headers": headers or {},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/notifications",
                    json=request_data,
                )
                response.raise_for_status()
                return response.json().get("notification_id")

        except httpx.HTTPStatusError as e:
            logger.error(f"Error sending notification: {e.response.text}")
            if e.response.status_code >= 500 or e.response.status_code == 429:
                raise TransientDeliveryError(
                    f"notification_service returned {e.response.status_code}"
                ) from e
            raise

        except httpx.TransportError as e:
            logger.error(f"Error sending notification: {e}")
            raise TransientDeliveryError(f"notification_service unreachable: {e}") from e

    async def health_check(self) -> bool:
        """Check if notification_service is healthy"""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/health")
                return response.status_code == 200
        except httpx.HTTPError:
            return False


__all__ = ["NotificationClient"]
