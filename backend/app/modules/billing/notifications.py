"""Billing notification dispatch.

Hands subscription events to the notification service, which owns delivery
(email, SMS). Dispatch is fire-and-forget: failures are logged and never
propagate into invoice generation or lifecycle changes.
"""

import logging
import uuid
from typing import Any, Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


class BillingEvent:
    """Notification event types."""
    INVOICE = "invoice"
    DUNNING = "dunning"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    COMPLETION = "completion"


class BillingNotifier:
    """Sends billing notifications to the notification service."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url if url is not None else settings.NOTIFICATIONS_URL
        self.timeout = timeout or settings.NOTIFICATIONS_TIMEOUT_SECONDS
        self._transport = transport

    async def send(
        self,
        event_type: str,
        subscription_id: uuid.UUID,
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Dispatch a notification.

        Args:
            event_type: One of the BillingEvent values
            subscription_id: Subscription the event belongs to
            payload: Event data (invoice amount, payment URL, ...)

        Returns:
            bool: True when the service accepted the notification
        """
        if not self.url:
            logger.debug(f"Notifications disabled, dropping {event_type} for {subscription_id}")
            return False

        body = {
            "type": event_type,
            "subscription_id": str(subscription_id),
            **(payload or {}),
        }
        headers = {"Content-Type": "application/json"}
        if settings.INTERNAL_API_KEY:
            headers["X-Internal-Key"] = settings.INTERNAL_API_KEY

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=body, headers=headers)
            if response.status_code >= 400:
                logger.warning(
                    f"Notification {event_type} for {subscription_id} rejected: "
                    f"{response.status_code} - {response.text[:200]}"
                )
                return False
            logger.info(f"Notification {event_type} sent for subscription {subscription_id}")
            return True
        except httpx.TimeoutException:
            logger.warning(f"Notification {event_type} for {subscription_id} timed out")
            return False
        except Exception as e:
            logger.error(f"Failed to send {event_type} notification for {subscription_id}: {e}")
            return False
