"""
Appointments API Endpoints

Availability lookup and appointment booking, cancellation and rescheduling.
Every route requires the ``appointments`` plan module.
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, validator
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...services.appointment_service import (
    appointment_service,
    AppointmentError,
    AppointmentNotFoundError,
    RescheduleLimitError,
    SlotUnavailableError,
)
from ...services.availability_service import availability_service, minutes_to_time, time_to_minutes
from ...services.plan_service import plan_service, PlanAccessError
from ..deps import plan_limit_exception, require_module
from ..responses import success_response

MODULE_CODE = "appointments"
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

router = APIRouter(prefix="/appointments", tags=["Appointments"])


# Pydantic schemas
class AppointmentCreateRequest(BaseModel):
    date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    lead_id: Optional[str] = None
    agent_id: Optional[str] = None
    appointment_type_id: Optional[str] = None
    location_id: Optional[str] = None
    customer_name: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_phone: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None

    @validator("end_time")
    def end_after_start(cls, v, values):
        start = values.get("start_time")
        if v and start and time_to_minutes(v) <= time_to_minutes(start):
            raise ValueError("end_time must be after start_time")
        return v


class AppointmentUpdateRequest(BaseModel):
    status: Optional[str] = Field(None, pattern="^(scheduled|confirmed|cancelled|completed)$")
    agent_id: Optional[str] = None
    customer_name: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_phone: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    max_attempts: Optional[int] = Field(None, ge=1)


class AppointmentResponse(BaseModel):
    id: str
    tenant_id: str
    lead_id: Optional[str] = None
    agent_id: Optional[str] = None
    appointment_type_id: Optional[str] = None
    location_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    date: date
    start_time: str
    end_time: str
    status: str
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    reschedule_count: int = 0
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _default_end_time(db: Session, tenant_id: str, start_time: str, appointment_type_id: Optional[str]) -> str:
    rules = availability_service.get_scheduling_rules(db, tenant_id, appointment_type_id)
    return minutes_to_time(time_to_minutes(start_time) + int(rules["appointment_duration"]))


def _not_found(appointment_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Appointment {appointment_id} not found"
    )


def _slot_conflict(exc: SlotUnavailableError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"code": "slot_unavailable", "message": str(exc)}
    )


@router.get("/availability")
async def get_availability(
    target_date: date = Query(..., alias="date", description="Day to check (YYYY-MM-DD)"),
    appointment_type_id: Optional[str] = Query(None, description="Appointment type overriding duration"),
    agent_id: Optional[str] = Query(None, description="Restrict to an agent's schedule"),
    location_id: Optional[str] = Query(None, description="Business location"),
    include_next: bool = Query(True, description="Search the next available day when this one is full"),
    tenant_id: str = Depends(require_module(MODULE_CODE)),
    db: Session = Depends(get_db)
):
    """Available slots for a date."""
    kwargs = {
        "appointment_type_id": appointment_type_id,
        "agent_id": agent_id,
        "location_id": location_id,
    }
    availability = availability_service.generate_availability(db, tenant_id, target_date, **kwargs)

    if include_next and not availability["available_slots"]:
        next_available = availability_service.find_next_available_date(db, tenant_id, target_date, **kwargs)
        availability["next_available_date"] = next_available["date"] if next_available else None

    return success_response(availability)


@router.get("")
async def list_appointments(
    start_date: Optional[date] = Query(None, description="First day (inclusive)"),
    end_date: Optional[date] = Query(None, description="Last day (inclusive)"),
    appointment_status: Optional[str] = Query(None, alias="status"),
    lead_id: Optional[str] = Query(None),
    agent_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(require_module(MODULE_CODE)),
    db: Session = Depends(get_db)
):
    appointments = appointment_service.list_appointments(
        db, tenant_id,
        start_date=start_date, end_date=end_date, status=appointment_status,
        lead_id=lead_id, agent_id=agent_id, skip=skip, limit=limit
    )
    items: List[AppointmentResponse] = [AppointmentResponse.model_validate(a) for a in appointments]
    return success_response(items)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_appointment(
    request: AppointmentCreateRequest,
    tenant_id: str = Depends(require_module(MODULE_CODE)),
    db: Session = Depends(get_db)
):
    """Book an appointment; 409 when the slot overlaps another booking."""
    try:
        plan_service.enforce_limit(
            db, tenant_id, MODULE_CODE, "max_active_appointments",
            appointment_service.count_active_appointments(db, tenant_id)
        )
    except PlanAccessError as e:
        raise plan_limit_exception(e)

    data = request.model_dump()
    data["end_time"] = data["end_time"] or _default_end_time(
        db, tenant_id, request.start_time, request.appointment_type_id
    )

    try:
        appointment = appointment_service.create_appointment(db, tenant_id, data)
    except SlotUnavailableError as e:
        raise _slot_conflict(e)
    return success_response(AppointmentResponse.model_validate(appointment))


@router.get("/{appointment_id}")
async def get_appointment(
    appointment_id: str,
    tenant_id: str = Depends(require_module(MODULE_CODE)),
    db: Session = Depends(get_db)
):
    try:
        appointment = appointment_service.get_appointment(db, tenant_id, appointment_id)
    except AppointmentNotFoundError:
        raise _not_found(appointment_id)
    return success_response(AppointmentResponse.model_validate(appointment))


@router.patch("/{appointment_id}")
async def update_appointment(
    appointment_id: str,
    request: AppointmentUpdateRequest,
    tenant_id: str = Depends(require_module(MODULE_CODE)),
    db: Session = Depends(get_db)
):
    try:
        appointment = appointment_service.update_appointment(
            db, tenant_id, appointment_id, request.model_dump(exclude_unset=True)
        )
    except AppointmentNotFoundError:
        raise _not_found(appointment_id)
    return success_response(AppointmentResponse.model_validate(appointment))


@router.post("/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: str,
    request: CancelRequest,
    tenant_id: str = Depends(require_module(MODULE_CODE)),
    db: Session = Depends(get_db)
):
    try:
        appointment = appointment_service.cancel_appointment(db, tenant_id, appointment_id, reason=request.reason)
    except AppointmentNotFoundError:
        raise _not_found(appointment_id)
    except AppointmentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return success_response(AppointmentResponse.model_validate(appointment))


@router.post("/{appointment_id}/reschedule")
async def reschedule_appointment(
    appointment_id: str,
    request: RescheduleRequest,
    tenant_id: str = Depends(require_module(MODULE_CODE)),
    db: Session = Depends(get_db)
):
    try:
        current = appointment_service.get_appointment(db, tenant_id, appointment_id)
        end_time = request.end_time
        if not end_time:
            duration = time_to_minutes(current.end_time) - time_to_minutes(current.start_time)
            end_time = minutes_to_time(time_to_minutes(request.start_time) + duration)

        appointment = appointment_service.reschedule_appointment(
            db, tenant_id, appointment_id,
            new_date=request.date,
            start_time=request.start_time,
            end_time=end_time,
            max_attempts=request.max_attempts,
        )
    except AppointmentNotFoundError:
        raise _not_found(appointment_id)
    except SlotUnavailableError as e:
        raise _slot_conflict(e)
    except RescheduleLimitError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "reschedule_limit_reached", "message": str(e)}
        )
    except AppointmentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return success_response(AppointmentResponse.model_validate(appointment))
