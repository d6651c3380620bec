from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, JSON
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin, SoftDeleteMixin, UUIDPrimaryKeyMixin


class Lead(Base, UUIDPrimaryKeyMixin, TimestampMixin, SoftDeleteMixin):
    """Prospective customer tracked through the sales funnel."""
    __tablename__ = "leads"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)

    # Lead Information
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    source = Column(String(50), default="chatbot", nullable=False)  # chatbot, web_form, manual, ...

    # Funnel position
    stage = Column(String(50), default="first_contact", nullable=False)
    status = Column(String(50), default="active", nullable=False)  # active, closed
    agent_id = Column(String(36), ForeignKey("agents.id"), nullable=True)

    notes = Column(Text, nullable=True)
    lead_metadata = Column("metadata", JSON, nullable=True)

    version = Column(Integer, nullable=False)

    activities = relationship("LeadActivity", back_populates="lead", order_by="LeadActivity.created_at")
    appointments = relationship("Appointment", back_populates="lead")

    __mapper_args__ = {"version_id_col": version}


class LeadActivity(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Track stage changes, notes and follow-up tasks on a lead."""
    __tablename__ = "lead_activities"

    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)

    activity_type = Column(String(50), nullable=False)  # stage_change, follow_up, note, closed
    status = Column(String(20), nullable=False, default="completed")  # completed, scheduled, cancelled
    subject = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    agent_id = Column(String(36), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    activity_metadata = Column("metadata", JSON, nullable=True)

    lead = relationship("Lead", back_populates="activities")
