"""
Celery tasks for PymeBot CRM.
This module contains background tasks for:
- Expiring idle conversation sessions (beat schedule)
- Delivering agent notifications with retries
"""

from .chatbot import deliver_agent_notification, expire_idle_sessions

__all__ = [
    'deliver_agent_notification',
    'expire_idle_sessions',
]
