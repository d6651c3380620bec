"""
Celery configuration for PymeBot CRM.
Handles background work for the chatbot: idle-session expiry and agent notification delivery.
"""

from celery import Celery
from .config import settings

celery_app = Celery(
    "pymebot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['app.tasks.chatbot']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,

    # Task routing and execution
    task_routes={
        'app.tasks.chatbot.*': {'queue': 'chatbot'},
    },

    # Task result settings
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=120,
    task_soft_time_limit=90,

    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    beat_schedule={
        'expire-idle-conversation-sessions': {
            'task': 'app.tasks.chatbot.expire_idle_sessions',
            'schedule': float(settings.SESSION_EXPIRY_INTERVAL),
        },
    },
)

__all__ = ['celery_app']
