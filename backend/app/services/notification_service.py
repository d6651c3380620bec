"""
Agent notifications raised by chatbot flows (bookings, cancellations, reschedules).
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from ..core.config import settings
from .webhook_service import WebhookService, WebhookError

logger = logging.getLogger(__name__)


class NotificationService:
    """Delivers agent notifications to the configured webhook."""

    def __init__(self, webhook_url: Optional[str] = None):
        self._webhook_url = webhook_url

    @property
    def webhook_url(self) -> Optional[str]:
        return self._webhook_url or settings.NOTIFICATION_WEBHOOK_URL

    def build_notification(
        self,
        tenant_id: str,
        event: str,
        agent_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "event": event,
            "agent_id": agent_id,
            "data": data or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

    async def send_agent_notification(self, notification: Dict[str, Any]) -> bool:
        """Post one notification; False when no endpoint is configured."""
        if not self.webhook_url:
            logger.info(
                f"Notification {notification.get('event')} for agent {notification.get('agent_id')} "
                f"not delivered: no webhook configured"
            )
            return False

        async with WebhookService() as webhooks:
            await webhooks.send("POST", self.webhook_url, notification)

        logger.info(f"Delivered notification {notification.get('event')} for tenant {notification.get('tenant_id')}")
        return True

    async def dispatch(self, notifications: List[Dict[str, Any]]) -> Dict[str, int]:
        """Deliver queued notifications; failures are logged and counted, never raised."""
        stats = {"sent": 0, "skipped": 0, "failed": 0}
        for notification in notifications:
            try:
                if await self.send_agent_notification(notification):
                    stats["sent"] += 1
                else:
                    stats["skipped"] += 1
            except WebhookError as e:
                stats["failed"] += 1
                logger.error(f"Notification {notification.get('event')} failed: {e}")
        return stats


# Global notification service instance
notification_service = NotificationService()
