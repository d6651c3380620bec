"""
Celery tasks for chatbot maintenance and agent notifications.
"""

import asyncio
import logging
from typing import Any, Dict

from app.core.celery import celery_app
from app.core.database import SessionLocal
from app.services.notification_service import notification_service
from app.services.webhook_service import TransientWebhookError, WebhookError

logger = logging.getLogger(__name__)


@celery_app.task(name='app.tasks.chatbot.expire_idle_sessions')
def expire_idle_sessions() -> Dict[str, Any]:
    """Expire conversation sessions idle longer than the configured timeout."""
    from chatbot.conversation.state_manager import state_manager

    db = SessionLocal()
    try:
        expired = state_manager.expire_idle_sessions(db)
    finally:
        db.close()

    return {'expired': expired}


@celery_app.task(
    bind=True,
    name='app.tasks.chatbot.deliver_agent_notification',
    max_retries=3,
    default_retry_delay=30,
)
def deliver_agent_notification(self, notification: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deliver one agent notification outside the request cycle.

    Transient webhook failures are retried by Celery with exponential
    backoff; permanent (4xx) rejections are logged and reported.
    """
    event = notification.get('event')
    try:
        delivered = asyncio.run(notification_service.send_agent_notification(notification))
    except TransientWebhookError as exc:
        logger.warning(f"Notification {event} delivery failed, retry {self.request.retries + 1}: {exc}")
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
    except WebhookError as exc:
        logger.error(f"Notification {event} rejected: {exc}")
        return {'event': event, 'delivered': False, 'error': str(exc)}

    return {'event': event, 'delivered': delivered}
