from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class ChatbotTemplate(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Flow graph document authored in the builder; replaced as a whole on save."""
    __tablename__ = "chatbot_templates"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), default="draft", nullable=False)  # draft, published, archived
    nodes = Column(JSON, nullable=False, default=list)
    edges = Column(JSON, nullable=False, default=list)
    version = Column(Integer, default=1, nullable=False)


class ChatbotActivation(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Binds a template to a tenant channel."""
    __tablename__ = "chatbot_activations"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    template_id = Column(String(36), ForeignKey("chatbot_templates.id"), nullable=False)
    channel_type = Column(String(30), default="web", nullable=False)  # web, whatsapp, ...
    is_active = Column(Boolean, default=True, nullable=False)
    config = Column(JSON, nullable=True)

    template = relationship("ChatbotTemplate")


class ConversationSession(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Persisted execution pointer and context of one conversation."""
    __tablename__ = "conversation_sessions"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    template_id = Column(String(36), ForeignKey("chatbot_templates.id"), nullable=True)
    activation_id = Column(String(36), ForeignKey("chatbot_activations.id"), nullable=True)
    user_channel_id = Column(String(255), nullable=False, index=True)
    channel_type = Column(String(30), default="web", nullable=False)

    status = Column(String(20), default="active", nullable=False, index=True)
    current_node_id = Column(String(255), nullable=True)
    state_data = Column(JSON, nullable=True)
    session_metadata = Column("metadata", JSON, nullable=True)

    last_interaction_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    messages = relationship(
        "ConversationMessage",
        back_populates="session",
        order_by="ConversationMessage.sequence",
    )
    transitions = relationship(
        "NodeTransition",
        back_populates="session",
        order_by="NodeTransition.sequence",
    )


class ConversationMessage(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "conversation_messages"

    session_id = Column(String(36), ForeignKey("conversation_sessions.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    role = Column(String(10), nullable=False)  # user, bot, system
    content = Column(Text, nullable=False)
    node_id = Column(String(255), nullable=True)
    message_metadata = Column("metadata", JSON, nullable=True)

    session = relationship("ConversationSession", back_populates="messages")


class NodeTransition(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "node_transitions"

    session_id = Column(String(36), ForeignKey("conversation_sessions.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    from_node_id = Column(String(255), nullable=True)
    to_node_id = Column(String(255), nullable=False)
    handle = Column(String(100), nullable=True)

    session = relationship("ConversationSession", back_populates="transitions")
