"""
Appointment Service

Creation, cancellation and rescheduling of appointments, with conflict
checks against existing appointments and blocked slots.
"""

import logging
from datetime import date
from typing import Dict, List, Optional, Any

from sqlalchemy import select, desc, func
from sqlalchemy.orm import Session

from ..models.scheduling import Appointment, BlockedTimeSlot
from .availability_service import (
    INACTIVE_APPOINTMENT_STATUSES,
    overlaps,
    time_to_minutes,
)

logger = logging.getLogger(__name__)

APPOINTMENT_STATUSES = ("scheduled", "confirmed", "cancelled", "completed")


class AppointmentError(Exception):
    """Base exception for appointment operations."""
    pass


class AppointmentNotFoundError(AppointmentError):
    pass


class SlotUnavailableError(AppointmentError):
    """Raised when the requested time overlaps another booking or a blocked slot."""
    pass


class RescheduleLimitError(AppointmentError):
    pass


class AppointmentService:
    """Service class for appointment operations."""

    def get_appointment(self, db: Session, tenant_id: str, appointment_id: str) -> Appointment:
        appointment = db.execute(
            select(Appointment).where(
                Appointment.id == appointment_id,
                Appointment.tenant_id == tenant_id
            )
        ).scalar_one_or_none()
        if appointment is None:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    def list_appointments(
        self,
        db: Session,
        tenant_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[str] = None,
        lead_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Appointment]:
        stmt = select(Appointment).where(Appointment.tenant_id == tenant_id)
        if start_date:
            stmt = stmt.where(Appointment.date >= start_date)
        if end_date:
            stmt = stmt.where(Appointment.date <= end_date)
        if status:
            stmt = stmt.where(Appointment.status == status)
        if lead_id:
            stmt = stmt.where(Appointment.lead_id == lead_id)
        if agent_id:
            stmt = stmt.where(Appointment.agent_id == agent_id)
        stmt = stmt.order_by(desc(Appointment.date), desc(Appointment.start_time)).offset(skip).limit(limit)
        return list(db.execute(stmt).scalars().all())

    def count_active_appointments(self, db: Session, tenant_id: str, from_date: Optional[date] = None) -> int:
        stmt = select(func.count(Appointment.id)).where(
            Appointment.tenant_id == tenant_id,
            Appointment.status.notin_(INACTIVE_APPOINTMENT_STATUSES)
        )
        if from_date:
            stmt = stmt.where(Appointment.date >= from_date)
        return db.execute(stmt).scalar_one()

    def has_conflict(
        self,
        db: Session,
        tenant_id: str,
        target_date: date,
        start_time: str,
        end_time: str,
        agent_id: Optional[str] = None,
        exclude_appointment_id: Optional[str] = None
    ) -> bool:
        """True when the range overlaps an active appointment or a blocked slot."""
        start, end = time_to_minutes(start_time), time_to_minutes(end_time)

        stmt = select(Appointment).where(
            Appointment.tenant_id == tenant_id,
            Appointment.date == target_date,
            Appointment.status.notin_(INACTIVE_APPOINTMENT_STATUSES)
        )
        if agent_id:
            stmt = stmt.where(Appointment.agent_id == agent_id)
        if exclude_appointment_id:
            stmt = stmt.where(Appointment.id != exclude_appointment_id)

        for appointment in db.execute(stmt).scalars():
            if overlaps(start, end, time_to_minutes(appointment.start_time), time_to_minutes(appointment.end_time)):
                return True

        blocked_stmt = select(BlockedTimeSlot).where(
            BlockedTimeSlot.tenant_id == tenant_id,
            BlockedTimeSlot.date == target_date
        )
        for blocked in db.execute(blocked_stmt).scalars():
            if agent_id and blocked.agent_id and blocked.agent_id != agent_id:
                continue
            if overlaps(start, end, time_to_minutes(blocked.start_time), time_to_minutes(blocked.end_time)):
                return True

        return False

    def create_appointment(
        self,
        db: Session,
        tenant_id: str,
        data: Dict[str, Any],
        commit: bool = True
    ) -> Appointment:
        """
        Create an appointment after checking for conflicts.

        Args:
            db: Database session
            tenant_id: Owning tenant
            data: date, start_time, end_time and optional lead/agent/customer fields
            commit: Commit immediately or only flush

        Returns:
            Created Appointment

        Raises:
            SlotUnavailableError: the time overlaps another booking
        """
        target_date = data["date"]
        if self.has_conflict(db, tenant_id, target_date, data["start_time"], data["end_time"], data.get("agent_id")):
            raise SlotUnavailableError(
                f"Slot {target_date} {data['start_time']}-{data['end_time']} is not available"
            )

        appointment = Appointment(
            tenant_id=tenant_id,
            lead_id=data.get("lead_id"),
            agent_id=data.get("agent_id"),
            appointment_type_id=data.get("appointment_type_id"),
            location_id=data.get("location_id"),
            customer_name=data.get("customer_name"),
            customer_email=data.get("customer_email"),
            customer_phone=data.get("customer_phone"),
            date=target_date,
            start_time=data["start_time"],
            end_time=data["end_time"],
            status=data.get("status") or "scheduled",
            notes=data.get("notes"),
        )
        db.add(appointment)
        self._finish(db, commit, appointment)

        logger.info(f"Created appointment {appointment.id} on {target_date} {appointment.start_time}")
        return appointment

    def cancel_appointment(
        self,
        db: Session,
        tenant_id: str,
        appointment_id: str,
        reason: Optional[str] = None,
        commit: bool = True
    ) -> Appointment:
        appointment = self.get_appointment(db, tenant_id, appointment_id)
        if appointment.status == "cancelled":
            raise AppointmentError(f"Appointment {appointment_id} is already cancelled")

        appointment.status = "cancelled"
        appointment.cancellation_reason = reason
        self._finish(db, commit, appointment)

        logger.info(f"Cancelled appointment {appointment_id}")
        return appointment

    def reschedule_appointment(
        self,
        db: Session,
        tenant_id: str,
        appointment_id: str,
        new_date: date,
        start_time: str,
        end_time: str,
        max_attempts: Optional[int] = None,
        commit: bool = True
    ) -> Appointment:
        """Move an appointment; raises SlotUnavailableError or RescheduleLimitError."""
        appointment = self.get_appointment(db, tenant_id, appointment_id)
        if appointment.status in ("cancelled", "completed"):
            raise AppointmentError(f"Appointment {appointment_id} is {appointment.status}")
        if max_attempts is not None and (appointment.reschedule_count or 0) >= max_attempts:
            raise RescheduleLimitError(
                f"Appointment {appointment_id} reached {max_attempts} reschedules"
            )
        if self.has_conflict(
            db, tenant_id, new_date, start_time, end_time,
            agent_id=appointment.agent_id, exclude_appointment_id=appointment.id
        ):
            raise SlotUnavailableError(f"Slot {new_date} {start_time}-{end_time} is not available")

        appointment.date = new_date
        appointment.start_time = start_time
        appointment.end_time = end_time
        appointment.status = "confirmed"
        appointment.reschedule_count = (appointment.reschedule_count or 0) + 1
        self._finish(db, commit, appointment)

        logger.info(f"Rescheduled appointment {appointment_id} to {new_date} {start_time}")
        return appointment

    def update_appointment(
        self,
        db: Session,
        tenant_id: str,
        appointment_id: str,
        updates: Dict[str, Any],
        commit: bool = True
    ) -> Appointment:
        appointment = self.get_appointment(db, tenant_id, appointment_id)
        for field_name in ("status", "notes", "agent_id", "customer_name", "customer_email", "customer_phone"):
            if field_name in updates:
                setattr(appointment, field_name, updates[field_name])
        self._finish(db, commit, appointment)
        return appointment

    def block_time_slot(
        self,
        db: Session,
        tenant_id: str,
        target_date: date,
        start_time: str,
        end_time: str,
        agent_id: Optional[str] = None,
        reason: Optional[str] = None,
        commit: bool = True
    ) -> BlockedTimeSlot:
        blocked = BlockedTimeSlot(
            tenant_id=tenant_id,
            agent_id=agent_id,
            date=target_date,
            start_time=start_time,
            end_time=end_time,
            reason=reason,
        )
        db.add(blocked)
        self._finish(db, commit)
        return blocked

    @staticmethod
    def _finish(db: Session, commit: bool, appointment: Optional[Appointment] = None) -> None:
        if commit:
            db.commit()
            if appointment is not None:
                db.refresh(appointment)
        else:
            db.flush()


# Global appointment service instance
appointment_service = AppointmentService()
