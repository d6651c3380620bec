from sqlalchemy import Column, String, Boolean, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Tenant(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A customer organization; every business row is scoped by tenant_id."""
    __tablename__ = "tenants"

    name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=True)
    subscription_plan_id = Column(String(36), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    settings = Column(JSON, nullable=True)

    agents = relationship("Agent", back_populates="tenant")


class PlanModule(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Module enabled for a subscription plan, with optional usage restrictions."""
    __tablename__ = "plan_modules"
    __table_args__ = (UniqueConstraint("plan_id", "module_code", name="uq_plan_module"),)

    plan_id = Column(String(36), nullable=False, index=True)
    module_code = Column(String(50), nullable=False)  # chatbot, appointments, leads, ...
    is_active = Column(Boolean, default=True, nullable=False)
    restrictions = Column(JSON, nullable=True)  # {"max_templates": 3, "max_active_appointments": 100}


class Agent(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Tenant user that owns leads and attends appointments."""
    __tablename__ = "agents"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    role = Column(String(50), default="agent", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    # {"monday": {"enabled": true, "slots": [{"start": "09:00", "end": "13:00"}]}, ...}
    availability = Column(JSON, nullable=True)

    tenant = relationship("Tenant", back_populates="agents")
