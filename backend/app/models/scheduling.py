from sqlalchemy import Column, Integer, String, Date, Text, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class BusinessHours(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Weekly opening hours. day_of_week: 0=Sunday .. 6=Saturday."""
    __tablename__ = "business_hours"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    location_id = Column(String(36), nullable=True)
    day_of_week = Column(Integer, nullable=False)
    open_time = Column(String(5), nullable=True)  # "09:00"
    close_time = Column(String(5), nullable=True)  # "18:00"
    is_closed = Column(Boolean, default=False, nullable=False)


class BusinessHoursException(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Date-specific override of the weekly hours (holidays, special openings)."""
    __tablename__ = "business_hours_exceptions"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    location_id = Column(String(36), nullable=True)
    date = Column(Date, nullable=False)
    is_closed = Column(Boolean, default=True, nullable=False)
    open_time = Column(String(5), nullable=True)
    close_time = Column(String(5), nullable=True)
    reason = Column(String(255), nullable=True)


class AppointmentSettings(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Per-tenant scheduling defaults."""
    __tablename__ = "appointment_settings"
    __table_args__ = (UniqueConstraint("tenant_id", name="uq_appointment_settings_tenant"),)

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False)
    appointment_duration = Column(Integer, default=30, nullable=False)  # minutes
    buffer_time = Column(Integer, default=0, nullable=False)  # minutes
    max_daily_appointments = Column(Integer, nullable=True)
    min_notice_minutes = Column(Integer, default=60, nullable=False)
    max_future_days = Column(Integer, default=30, nullable=False)


class AppointmentType(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "appointment_types"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    duration = Column(Integer, nullable=True)  # minutes, overrides settings
    buffer_time = Column(Integer, nullable=True)
    max_daily_appointments = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class Appointment(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Scheduled meeting between a lead/customer and an agent."""
    __tablename__ = "appointments"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=True, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id"), nullable=True)
    appointment_type_id = Column(String(36), ForeignKey("appointment_types.id"), nullable=True)
    location_id = Column(String(36), nullable=True)

    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    date = Column(Date, nullable=False, index=True)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    status = Column(String(20), default="scheduled", nullable=False)  # scheduled, confirmed, cancelled, completed

    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    reschedule_count = Column(Integer, default=0, nullable=False)

    lead = relationship("Lead", back_populates="appointments")
    appointment_type = relationship("AppointmentType")


class BlockedTimeSlot(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Time range that must not be offered again (e.g. blacklisted after a cancellation)."""
    __tablename__ = "blocked_time_slots"

    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    agent_id = Column(String(36), nullable=True)
    location_id = Column(String(36), nullable=True)
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    reason = Column(String(255), nullable=True)
