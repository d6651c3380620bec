"""
Availability Service

Generates bookable time slots for a tenant and date from business hours,
date exceptions, scheduling settings, agent availability, existing
appointments and blocked slots.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Any, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.scheduling import (
    Appointment,
    AppointmentSettings,
    AppointmentType,
    BlockedTimeSlot,
    BusinessHours,
    BusinessHoursException,
)
from ..models.tenant import Agent

logger = logging.getLogger(__name__)

# Indexed by date.weekday() (Monday=0)
DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

INACTIVE_APPOINTMENT_STATUSES = ("cancelled",)


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def minutes_to_time(value: int) -> str:
    return f"{value // 60:02d}:{value % 60:02d}"


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    return start_a < end_b and start_b < end_a


def day_of_week_index(target_date: date) -> int:
    """Sunday-based weekday index used by BusinessHours.day_of_week."""
    return target_date.isoweekday() % 7


def scheduling_tz() -> ZoneInfo:
    return ZoneInfo(settings.SCHEDULING_TIMEZONE)


def local_now(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(scheduling_tz())


class AvailabilityService:
    """Computes available appointment slots."""

    def get_scheduling_rules(
        self,
        db: Session,
        tenant_id: str,
        appointment_type_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Effective duration/buffer/limits: tenant settings overridden by the appointment type."""
        rules = {
            "appointment_duration": settings.DEFAULT_APPOINTMENT_DURATION,
            "buffer_time": settings.DEFAULT_APPOINTMENT_BUFFER,
            "max_daily_appointments": None,
            "min_notice_minutes": settings.DEFAULT_MIN_NOTICE_MINUTES,
            "max_future_days": settings.DEFAULT_MAX_FUTURE_DAYS,
        }

        tenant_settings = db.execute(
            select(AppointmentSettings).where(AppointmentSettings.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if tenant_settings is not None:
            rules.update({
                "appointment_duration": tenant_settings.appointment_duration,
                "buffer_time": tenant_settings.buffer_time,
                "max_daily_appointments": tenant_settings.max_daily_appointments,
                "min_notice_minutes": tenant_settings.min_notice_minutes,
                "max_future_days": tenant_settings.max_future_days,
            })

        if appointment_type_id:
            appointment_type = db.execute(
                select(AppointmentType).where(
                    AppointmentType.id == appointment_type_id,
                    AppointmentType.tenant_id == tenant_id
                )
            ).scalar_one_or_none()
            if appointment_type is not None:
                if appointment_type.duration:
                    rules["appointment_duration"] = appointment_type.duration
                if appointment_type.buffer_time is not None:
                    rules["buffer_time"] = appointment_type.buffer_time
                if appointment_type.max_daily_appointments:
                    rules["max_daily_appointments"] = appointment_type.max_daily_appointments

        # Slots must advance: a non-positive duration falls back to the default.
        if not rules["appointment_duration"] or rules["appointment_duration"] <= 0:
            logger.warning(
                f"Invalid appointment duration {rules['appointment_duration']!r} for tenant {tenant_id}, "
                f"using {settings.DEFAULT_APPOINTMENT_DURATION}"
            )
            rules["appointment_duration"] = settings.DEFAULT_APPOINTMENT_DURATION
        rules["buffer_time"] = max(int(rules["buffer_time"] or 0), 0)

        return rules

    def get_business_hours(
        self,
        db: Session,
        tenant_id: str,
        target_date: date,
        location_id: Optional[str] = None
    ) -> Tuple[Dict[str, Any], bool]:
        """Opening hours for the date and whether they came from an exception."""
        exception_stmt = select(BusinessHoursException).where(
            BusinessHoursException.tenant_id == tenant_id,
            BusinessHoursException.date == target_date,
            or_(BusinessHoursException.location_id == location_id,
                BusinessHoursException.location_id.is_(None))
        )
        exception = self._prefer_location(db.execute(exception_stmt).scalars().all(), location_id)
        if exception is not None:
            is_closed = bool(exception.is_closed) or not (exception.open_time and exception.close_time)
            return {
                "open_time": None if is_closed else exception.open_time,
                "close_time": None if is_closed else exception.close_time,
                "is_closed": is_closed,
            }, True

        hours_stmt = select(BusinessHours).where(
            BusinessHours.tenant_id == tenant_id,
            BusinessHours.day_of_week == day_of_week_index(target_date),
            or_(BusinessHours.location_id == location_id, BusinessHours.location_id.is_(None))
        )
        hours = self._prefer_location(db.execute(hours_stmt).scalars().all(), location_id)
        if hours is None or hours.is_closed or not (hours.open_time and hours.close_time):
            return {"open_time": None, "close_time": None, "is_closed": True}, False

        return {"open_time": hours.open_time, "close_time": hours.close_time, "is_closed": False}, False

    def generate_availability(
        self,
        db: Session,
        tenant_id: str,
        target_date: date,
        appointment_type_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        location_id: Optional[str] = None,
        now: Optional[datetime] = None,
        exclude_appointment_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Generate available slots for a date.

        Args:
            db: Database session
            tenant_id: Tenant whose calendar is queried
            target_date: Day to generate slots for
            appointment_type_id: Optional type overriding duration/buffer/daily cap
            agent_id: Restrict to the agent's availability and appointments
            location_id: Restrict business hours to a location
            now: Current instant (defaults to the clock), used for minimum notice
            exclude_appointment_id: Appointment ignored for conflicts (rescheduling)

        Returns:
            Dict with date, available_slots, business_hours and is_exception_day
        """
        business_hours, is_exception_day = self.get_business_hours(db, tenant_id, target_date, location_id)
        result: Dict[str, Any] = {
            "date": target_date.isoformat(),
            "available_slots": [],
            "business_hours": business_hours,
            "is_exception_day": is_exception_day,
        }

        if business_hours["is_closed"]:
            logger.debug(f"Tenant {tenant_id} closed on {target_date}")
            return result

        rules = self.get_scheduling_rules(db, tenant_id, appointment_type_id)
        current = local_now(now)
        today = current.date()

        if target_date < today or target_date > today + timedelta(days=rules["max_future_days"]):
            result["reason"] = "outside_booking_window"
            return result

        duration = int(rules["appointment_duration"])
        if duration <= 0:
            result["reason"] = "invalid_duration"
            return result
        step = duration + int(rules["buffer_time"] or 0)
        open_minutes = time_to_minutes(business_hours["open_time"])
        close_minutes = time_to_minutes(business_hours["close_time"])

        slots: List[Tuple[int, int]] = []
        start = open_minutes
        while start + duration <= close_minutes:
            slots.append((start, start + duration))
            start += step

        if target_date == today:
            earliest = current + timedelta(minutes=rules["min_notice_minutes"])
            earliest_minutes = earliest.hour * 60 + earliest.minute if earliest.date() == today else 24 * 60
            slots = [slot for slot in slots if slot[0] >= earliest_minutes]

        if agent_id:
            slots = self._filter_by_agent(db, tenant_id, agent_id, target_date, slots)

        busy = self._busy_ranges(db, tenant_id, target_date, agent_id, exclude_appointment_id)
        slots = [
            slot for slot in slots
            if not any(overlaps(slot[0], slot[1], b_start, b_end) for b_start, b_end in busy["all"])
        ]

        max_daily = rules["max_daily_appointments"]
        if max_daily:
            remaining = max(0, int(max_daily) - busy["appointment_count"])
            slots = slots[:remaining]

        tz = scheduling_tz()
        result["available_slots"] = [
            self._format_slot(target_date, slot_start, slot_end, tz) for slot_start, slot_end in slots
        ]
        return result

    def find_next_available_date(
        self,
        db: Session,
        tenant_id: str,
        from_date: date,
        max_days: Optional[int] = None,
        **kwargs: Any
    ) -> Optional[Dict[str, Any]]:
        """First availability result after ``from_date`` that has slots, or None."""
        max_days = max_days or settings.NEXT_AVAILABLE_SEARCH_DAYS
        for offset in range(1, max_days + 1):
            candidate = from_date + timedelta(days=offset)
            availability = self.generate_availability(db, tenant_id, candidate, **kwargs)
            if availability["available_slots"]:
                return availability
        return None

    def is_slot_available(
        self,
        db: Session,
        tenant_id: str,
        target_date: date,
        start_time: str,
        **kwargs: Any
    ) -> Optional[Dict[str, Any]]:
        """Return the matching free slot for ``start_time`` or None."""
        availability = self.generate_availability(db, tenant_id, target_date, **kwargs)
        for slot in availability["available_slots"]:
            if slot["start_time"] == start_time:
                return slot
        return None

    # -- helpers --------------------------------------------------------

    @staticmethod
    def _prefer_location(rows: List[Any], location_id: Optional[str]) -> Optional[Any]:
        if not rows:
            return None
        for row in rows:
            if location_id and row.location_id == location_id:
                return row
        return rows[0]

    def _filter_by_agent(
        self,
        db: Session,
        tenant_id: str,
        agent_id: str,
        target_date: date,
        slots: List[Tuple[int, int]]
    ) -> List[Tuple[int, int]]:
        agent = db.execute(
            select(Agent).where(Agent.id == agent_id, Agent.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if agent is None or not agent.is_active:
            return []
        if not agent.availability:
            return slots

        day_config = agent.availability.get(DAY_NAMES[target_date.weekday()]) or {}
        if not day_config.get("enabled"):
            return []

        ranges = [
            (time_to_minutes(r["start"]), time_to_minutes(r["end"]))
            for r in day_config.get("slots") or []
            if r.get("start") and r.get("end")
        ]
        return [
            slot for slot in slots
            if any(r_start <= slot[0] and slot[1] <= r_end for r_start, r_end in ranges)
        ]

    def _busy_ranges(
        self,
        db: Session,
        tenant_id: str,
        target_date: date,
        agent_id: Optional[str],
        exclude_appointment_id: Optional[str]
    ) -> Dict[str, Any]:
        appointment_stmt = select(Appointment).where(
            Appointment.tenant_id == tenant_id,
            Appointment.date == target_date,
            Appointment.status.notin_(INACTIVE_APPOINTMENT_STATUSES)
        )
        if agent_id:
            appointment_stmt = appointment_stmt.where(Appointment.agent_id == agent_id)
        if exclude_appointment_id:
            appointment_stmt = appointment_stmt.where(Appointment.id != exclude_appointment_id)
        appointments = db.execute(appointment_stmt).scalars().all()

        blocked_stmt = select(BlockedTimeSlot).where(
            BlockedTimeSlot.tenant_id == tenant_id,
            BlockedTimeSlot.date == target_date
        )
        if agent_id:
            blocked_stmt = blocked_stmt.where(
                or_(BlockedTimeSlot.agent_id == agent_id, BlockedTimeSlot.agent_id.is_(None))
            )
        blocked = db.execute(blocked_stmt).scalars().all()

        ranges = [(time_to_minutes(a.start_time), time_to_minutes(a.end_time)) for a in appointments]
        ranges += [(time_to_minutes(b.start_time), time_to_minutes(b.end_time)) for b in blocked]
        return {"all": ranges, "appointment_count": len(appointments)}

    @staticmethod
    def _format_slot(target_date: date, start: int, end: int, tz: ZoneInfo) -> Dict[str, str]:
        start_dt = datetime.combine(target_date, time(start // 60, start % 60), tzinfo=tz)
        end_dt = datetime.combine(target_date, time(end // 60, end % 60), tzinfo=tz) if end < 24 * 60 \
            else datetime.combine(target_date + timedelta(days=1), time(0, 0), tzinfo=tz)
        return {
            "start_time": minutes_to_time(start),
            "end_time": minutes_to_time(end),
            "start_datetime": start_dt.isoformat(),
            "end_datetime": end_dt.isoformat(),
        }


# Global availability service instance
availability_service = AvailabilityService()
