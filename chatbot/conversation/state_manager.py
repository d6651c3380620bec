"""
Conversation State Manager for chatbot sessions.

Sessions, messages and node transitions live in the SQL database. Methods
that mutate only flush: the flow engine commits a whole turn at once.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple

from sqlalchemy import select, func, desc
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.base import ensure_aware
from app.models.chatbot import (
    ChatbotActivation,
    ConversationMessage,
    ConversationSession,
    NodeTransition,
)
from app.services.template_service import template_service

from .flow_graph import FlowTemplate

logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    """Conversation session status enumeration."""
    ACTIVE = "active"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"
    TRANSFERRED = "transferred"


OPEN_STATUSES = (SessionStatus.ACTIVE.value, SessionStatus.WAITING_INPUT.value)

_UNSET = object()


class ConversationStateManager:
    """Persists conversation sessions and their history."""

    def __init__(self, idle_timeout_minutes: Optional[int] = None):
        self.idle_timeout = timedelta(
            minutes=idle_timeout_minutes or settings.CONVERSATION_IDLE_TIMEOUT_MINUTES
        )

    # -- lookup ---------------------------------------------------------

    def get_session(
        self,
        db: Session,
        session_id: str,
        tenant_id: Optional[str] = None
    ) -> Optional[ConversationSession]:
        stmt = select(ConversationSession).where(ConversationSession.id == session_id)
        if tenant_id:
            stmt = stmt.where(ConversationSession.tenant_id == tenant_id)
        return db.execute(stmt).scalar_one_or_none()

    def find_active_session(
        self,
        db: Session,
        tenant_id: str,
        user_channel_id: str,
        channel_type: str
    ) -> Optional[ConversationSession]:
        """Most recent open session for the (tenant, user, channel) tuple."""
        return db.execute(
            select(ConversationSession).where(
                ConversationSession.tenant_id == tenant_id,
                ConversationSession.user_channel_id == user_channel_id,
                ConversationSession.channel_type == channel_type,
                ConversationSession.status.in_(OPEN_STATUSES)
            ).order_by(desc(ConversationSession.last_interaction_at))
        ).scalars().first()

    def is_idle(self, session: ConversationSession, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        last = ensure_aware(session.last_interaction_at)
        return last is not None and now - last > self.idle_timeout

    # -- lifecycle ------------------------------------------------------

    def create_session(
        self,
        db: Session,
        tenant_id: str,
        user_channel_id: str,
        channel_type: str,
        activation: ChatbotActivation,
        flow: FlowTemplate,
        initial_state: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ConversationSession:
        """Create a session positioned on the flow's start node."""
        start = flow.start_node()
        session = ConversationSession(
            tenant_id=tenant_id,
            template_id=activation.template_id,
            activation_id=activation.id,
            user_channel_id=user_channel_id,
            channel_type=channel_type,
            status=SessionStatus.ACTIVE.value,
            current_node_id=start.id if start else None,
            state_data=dict(initial_state or {}),
            session_metadata={"template_version": flow.version, **(metadata or {})},
            last_interaction_at=datetime.now(timezone.utc),
        )
        db.add(session)
        db.flush()

        logger.info(
            f"Created conversation session {session.id} for {user_channel_id} "
            f"on {channel_type} (template {activation.template_id})"
        )
        return session

    def start_session(
        self,
        db: Session,
        tenant_id: str,
        user_channel_id: str,
        channel_type: str,
        initial_state: Optional[Dict[str, Any]] = None
    ) -> Optional[Tuple[ConversationSession, FlowTemplate]]:
        """Resolve the channel's active template and open a session on it; None without one."""
        resolved = template_service.get_active_template(db, tenant_id, channel_type)
        if resolved is None:
            logger.warning(f"No active chatbot template for tenant {tenant_id} on channel {channel_type}")
            return None

        activation, flow = resolved
        session = self.create_session(
            db, tenant_id, user_channel_id, channel_type, activation, flow, initial_state
        )
        return session, flow

    def update_session(
        self,
        db: Session,
        session: ConversationSession,
        state_updates: Optional[Dict[str, Any]] = None,
        metadata_updates: Optional[Dict[str, Any]] = None,
        status: Optional[str] = None,
        current_node_id: Any = _UNSET
    ) -> ConversationSession:
        """Merge state and metadata updates into the session."""
        if state_updates:
            session.state_data = {**(session.state_data or {}), **state_updates}
        if metadata_updates:
            session.session_metadata = {**(session.session_metadata or {}), **metadata_updates}
        if status:
            session.status = status
        if current_node_id is not _UNSET:
            session.current_node_id = current_node_id
        session.last_interaction_at = datetime.now(timezone.utc)
        db.flush()
        return session

    def save_state(
        self,
        db: Session,
        session: ConversationSession,
        state: Dict[str, Any],
        current_node_id: Optional[str],
        status: str
    ) -> ConversationSession:
        """Replace the stored context and execution pointer."""
        session.state_data = state
        session.current_node_id = current_node_id
        session.status = status
        session.last_interaction_at = datetime.now(timezone.utc)
        if status not in OPEN_STATUSES and session.ended_at is None:
            session.ended_at = datetime.now(timezone.utc)
        db.flush()
        return session

    def end_session(
        self,
        db: Session,
        session: ConversationSession,
        status: SessionStatus = SessionStatus.COMPLETED,
        reason: Optional[str] = None
    ) -> ConversationSession:
        session.status = status.value
        session.ended_at = datetime.now(timezone.utc)
        if reason:
            session.session_metadata = {**(session.session_metadata or {}), "end_reason": reason}
        db.flush()

        logger.info(f"Ended conversation session {session.id} with status {status.value}")
        return session

    def expire_idle_sessions(self, db: Session, now: Optional[datetime] = None, commit: bool = True) -> int:
        """Mark open sessions idle beyond the timeout as expired."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.idle_timeout

        sessions = db.execute(
            select(ConversationSession).where(
                ConversationSession.status.in_(OPEN_STATUSES),
                ConversationSession.last_interaction_at < cutoff
            )
        ).scalars().all()

        for session in sessions:
            session.status = SessionStatus.EXPIRED.value
            session.ended_at = now
            session.session_metadata = {**(session.session_metadata or {}), "end_reason": "idle_timeout"}

        if commit:
            db.commit()
        else:
            db.flush()

        if sessions:
            logger.info(f"Expired {len(sessions)} idle conversation sessions")
        return len(sessions)

    # -- history --------------------------------------------------------

    def _next_sequence(self, db: Session, model: Any, session_id: str) -> int:
        current = db.execute(
            select(func.max(model.sequence)).where(model.session_id == session_id)
        ).scalar()
        return (current or 0) + 1

    def add_message(
        self,
        db: Session,
        session: ConversationSession,
        role: str,
        content: str,
        node_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ConversationMessage:
        message = ConversationMessage(
            session_id=session.id,
            sequence=self._next_sequence(db, ConversationMessage, session.id),
            role=role,
            content=content,
            node_id=node_id,
            message_metadata=metadata or {},
        )
        db.add(message)
        db.flush()
        return message

    def get_messages(
        self,
        db: Session,
        session_id: str,
        limit: Optional[int] = None
    ) -> List[ConversationMessage]:
        """Messages in conversation order; with ``limit`` only the most recent ones."""
        stmt = select(ConversationMessage).where(ConversationMessage.session_id == session_id)
        if limit:
            recent = db.execute(
                stmt.order_by(desc(ConversationMessage.sequence)).limit(limit)
            ).scalars().all()
            return list(reversed(recent))
        return list(db.execute(stmt.order_by(ConversationMessage.sequence)).scalars().all())

    def log_transition(
        self,
        db: Session,
        session: ConversationSession,
        from_node_id: Optional[str],
        to_node_id: str,
        handle: Optional[str] = None
    ) -> NodeTransition:
        transition = NodeTransition(
            session_id=session.id,
            sequence=self._next_sequence(db, NodeTransition, session.id),
            from_node_id=from_node_id,
            to_node_id=to_node_id,
            handle=handle,
        )
        db.add(transition)
        db.flush()
        return transition

    def get_transitions(self, db: Session, session_id: str) -> List[NodeTransition]:
        return list(db.execute(
            select(NodeTransition).where(NodeTransition.session_id == session_id)
            .order_by(NodeTransition.sequence)
        ).scalars().all())

    # -- statistics -----------------------------------------------------

    def get_session_statistics(self, db: Session, tenant_id: str) -> Dict[str, Any]:
        by_status = dict(db.execute(
            select(ConversationSession.status, func.count(ConversationSession.id))
            .where(ConversationSession.tenant_id == tenant_id)
            .group_by(ConversationSession.status)
        ).all())
        total_sessions = sum(by_status.values())

        total_messages = db.execute(
            select(func.count(ConversationMessage.id))
            .join(ConversationSession, ConversationSession.id == ConversationMessage.session_id)
            .where(ConversationSession.tenant_id == tenant_id)
        ).scalar_one()

        return {
            "total_sessions": total_sessions,
            "open_sessions": sum(by_status.get(s, 0) for s in OPEN_STATUSES),
            "by_status": by_status,
            "total_messages": total_messages,
            "average_messages_per_session": round(total_messages / total_sessions, 2) if total_sessions else 0,
            "idle_timeout_minutes": int(self.idle_timeout.total_seconds() // 60),
        }


# Global state manager instance
state_manager = ConversationStateManager()
