"""
Appointment nodes: availability lookup, booking, cancellation and rescheduling.

Executors work on a copy of the context and only flush their database
changes; the flow engine commits the whole turn.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.services.appointment_service import (
    AppointmentError,
    AppointmentNotFoundError,
    RescheduleLimitError,
    SlotUnavailableError,
    appointment_service,
)
from app.services.availability_service import (
    availability_service,
    local_now,
    minutes_to_time,
    time_to_minutes,
)
from app.services.lead_service import lead_service
from app.services.notification_service import notification_service

from chatbot.conversation.context import ConversationContext
from chatbot.conversation.flow_graph import NodeType
from .base import NodeResult, executor_registry

logger = logging.getLogger(__name__)

MAX_LISTED_SLOTS = 3
DEFAULT_MAX_RESCHEDULE_ATTEMPTS = 3

AVAILABLE_MESSAGE = "Tenemos estos horarios disponibles para el {{date}}: {{slots}}."
UNAVAILABLE_MESSAGE = "Lo siento, no tenemos horarios disponibles para el {{date}}."
NEXT_DATE_SUFFIX = " El siguiente día con horarios es el {{next_date}}."
BOOKED_MESSAGE = "¡Listo! Tu cita quedó agendada para el {{appointment_date}} a las {{appointment_time}}."
CANCELLED_MESSAGE = "Tu cita fue cancelada. Si lo deseas, podemos agendar una nueva."
RESCHEDULED_MESSAGE = "Tu cita fue reprogramada para el {{appointment_date}} a las {{appointment_time}}."
REASON_PROMPT = "¿Podrías indicarnos el motivo de la cancelación?"


def parse_date(value: Any) -> Optional[date]:
    """Accepts date objects, ISO strings and DD/MM/YYYY."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"):
        try:
            return datetime.strptime(text[:10], fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def summarize_slots(slots: List[Dict[str, Any]]) -> str:
    times = [slot["start_time"] for slot in slots[:MAX_LISTED_SLOTS]]
    summary = ", ".join(times)
    if len(slots) > MAX_LISTED_SLOTS:
        summary += ", entre otros"
    return summary


def resolve_slot(
    selected: Any,
    available_slots: List[Dict[str, Any]],
    duration: Optional[int] = None
) -> Optional[Tuple[str, Optional[str]]]:
    """(start_time, end_time) for a selected slot given as "HH:MM" or {start_time, end_time}."""
    if not selected:
        return None
    if isinstance(selected, dict):
        start = selected.get("start_time") or selected.get("start")
        end = selected.get("end_time") or selected.get("end")
    else:
        start, end = str(selected).strip(), None
    if not start:
        return None

    try:
        start = minutes_to_time(time_to_minutes(start))
    except ValueError:
        return None
    if end is None:
        for slot in available_slots:
            if slot.get("start_time") == start:
                end = slot.get("end_time")
                break
    if end is None and duration:
        end = minutes_to_time(time_to_minutes(start) + duration)
    return start, end


def _scheduling_kwargs(context: ConversationContext, node_data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "appointment_type_id": node_data.get("appointment_type_id") or context.appointment_type_id,
        "agent_id": node_data.get("agent_id") or context.agent_id,
        "location_id": node_data.get("location_id") or context.location_id,
    }


def _failure(context: ConversationContext, node_data: Dict[str, Any], default: str, reason: str) -> NodeResult:
    message = context.render(node_data.get("failure_message") or default)
    return NodeResult("failure", context, message, metadata={"reason": reason})


@executor_registry.register(NodeType.CHECK_AVAILABILITY.value, "availability")
async def check_availability(
    tenant_id: str,
    context: ConversationContext,
    node_data: Dict[str, Any],
    db: Session
) -> NodeResult:
    ctx = context.copy()
    kwargs = _scheduling_kwargs(ctx, node_data)
    target_date = parse_date(ctx.selected_date) or parse_date(node_data.get("date")) or local_now().date()

    availability = availability_service.generate_availability(db, tenant_id, target_date, **kwargs)
    slots = availability["available_slots"]
    ctx.update({
        "selected_date": target_date.isoformat(),
        "available_slots": slots,
        "business_hours": availability["business_hours"],
    })

    if slots:
        message = ctx.render(
            node_data.get("available_message") or AVAILABLE_MESSAGE,
            {"date": format_date(target_date), "slots": summarize_slots(slots)},
        )
        logger.info(f"{len(slots)} slots available on {target_date} for tenant {tenant_id}")
        return NodeResult("available", ctx, message, metadata={"slot_count": len(slots)})

    next_availability = availability_service.find_next_available_date(db, tenant_id, target_date, **kwargs)
    next_date = None
    if next_availability is not None:
        next_date = format_date(parse_date(next_availability["date"]))
        ctx.set("next_available_date", next_availability["date"])

    template = node_data.get("unavailable_message")
    if not template:
        template = UNAVAILABLE_MESSAGE + (NEXT_DATE_SUFFIX if next_date else "")
    message = ctx.render(template, {"date": format_date(target_date), "next_date": next_date})
    return NodeResult(
        "unavailable",
        ctx,
        message,
        metadata={"is_closed": availability["business_hours"]["is_closed"], "next_available_date": next_date},
    )


@executor_registry.register(NodeType.BOOK_APPOINTMENT.value, "book")
async def book_appointment(
    tenant_id: str,
    context: ConversationContext,
    node_data: Dict[str, Any],
    db: Session
) -> NodeResult:
    """
    Book the selected slot.

    The slot is checked again against freshly generated availability. The lead
    stage update, follow-up task and appointment share the turn's transaction.
    """
    ctx = context.copy()
    kwargs = _scheduling_kwargs(ctx, node_data)
    target_date = parse_date(ctx.selected_date)
    slot = resolve_slot(ctx.selected_time_slot, ctx.available_slots)

    if target_date is None or slot is None:
        return _failure(ctx, node_data, "Necesito la fecha y el horario para agendar tu cita.", "missing_slot")

    free_slot = availability_service.is_slot_available(db, tenant_id, target_date, slot[0], **kwargs)
    if free_slot is None:
        logger.info(f"Slot {target_date} {slot[0]} no longer available for tenant {tenant_id}")
        return _failure(ctx, node_data, "Lo siento, ese horario ya no está disponible.", "slot_unavailable")

    customer_name = ctx.get("customer_name") or ctx.get("user_name")
    try:
        appointment = appointment_service.create_appointment(
            db,
            tenant_id,
            {
                "date": target_date,
                "start_time": free_slot["start_time"],
                "end_time": free_slot["end_time"],
                "lead_id": ctx.lead_id,
                "customer_name": customer_name,
                "customer_email": ctx.get("email") or ctx.get("customer_email"),
                "customer_phone": ctx.get("phone") or ctx.get("customer_phone"),
                "notes": node_data.get("notes"),
                **kwargs,
            },
            commit=False,
        )
    except SlotUnavailableError:
        return _failure(ctx, node_data, "Lo siento, ese horario ya no está disponible.", "slot_unavailable")

    lead = None
    if ctx.lead_id and node_data.get("update_lead_stage", True):
        lead = lead_service.update_stage(
            db,
            tenant_id,
            ctx.lead_id,
            node_data.get("lead_stage") or "confirmed",
            reason="appointment_booked",
            commit=False,
        )

    if ctx.lead_id and node_data.get("create_follow_up"):
        lead = lead or lead_service.get_lead(db, tenant_id, ctx.lead_id)
        lead_service.create_follow_up(
            db,
            lead,
            scheduled_at=datetime.fromisoformat(free_slot["start_datetime"]) + timedelta(days=1),
            subject="Seguimiento de cita",
            description=f"Seguimiento de la cita del {format_date(target_date)}",
            agent_id=appointment.agent_id,
            commit=False,
        )

    ctx.update({
        "appointment_id": appointment.id,
        "appointment_date": format_date(target_date),
        "appointment_time": appointment.start_time,
        "appointment_status": appointment.status,
    })
    result = NodeResult(
        "success",
        ctx,
        ctx.render(node_data.get("success_message") or BOOKED_MESSAGE),
        metadata={"appointment_id": appointment.id},
    )

    if node_data.get("notify_agent"):
        result.queue_notification(notification_service.build_notification(
            tenant_id,
            "appointment_booked",
            agent_id=appointment.agent_id,
            data={
                "appointment_id": appointment.id,
                "lead_id": ctx.lead_id,
                "customer_name": customer_name,
                "date": target_date.isoformat(),
                "start_time": appointment.start_time,
            },
        ))

    logger.info(f"Booked appointment {appointment.id} for tenant {tenant_id}")
    return result


@executor_registry.register(NodeType.CANCEL_APPOINTMENT.value, "cancel")
async def cancel_appointment(
    tenant_id: str,
    context: ConversationContext,
    node_data: Dict[str, Any],
    db: Session
) -> NodeResult:
    ctx = context.copy()
    if not ctx.appointment_id:
        return _failure(ctx, node_data, "No encontré una cita para cancelar.", "missing_appointment")

    if node_data.get("require_reason") and not ctx.cancellation_reason:
        message = ctx.render(node_data.get("reason_prompt") or REASON_PROMPT)
        return NodeResult("needReason", ctx, message, metadata={"waiting_for": "cancellation_reason"})

    try:
        appointment = appointment_service.cancel_appointment(
            db, tenant_id, ctx.appointment_id, reason=ctx.cancellation_reason, commit=False
        )
    except AppointmentNotFoundError:
        return _failure(ctx, node_data, "No encontré una cita para cancelar.", "appointment_not_found")
    except AppointmentError:
        return _failure(ctx, node_data, "Esa cita ya estaba cancelada.", "already_cancelled")

    lead_id = appointment.lead_id or ctx.lead_id
    if lead_id and node_data.get("update_lead_on_cancel"):
        lead_service.update_stage(
            db,
            tenant_id,
            lead_id,
            node_data.get("cancel_lead_stage") or "prospecting",
            reason="appointment_cancelled",
            commit=False,
        )

    if node_data.get("blacklist_slot"):
        appointment_service.block_time_slot(
            db,
            tenant_id,
            appointment.date,
            appointment.start_time,
            appointment.end_time,
            agent_id=appointment.agent_id,
            reason=f"Cancelled appointment {appointment.id}",
            commit=False,
        )

    ctx.set("appointment_status", "cancelled")
    result = NodeResult("success", ctx, ctx.render(node_data.get("success_message") or CANCELLED_MESSAGE))

    if node_data.get("notify_agent"):
        result.queue_notification(notification_service.build_notification(
            tenant_id,
            "appointment_cancelled",
            agent_id=appointment.agent_id,
            data={
                "appointment_id": appointment.id,
                "lead_id": lead_id,
                "reason": ctx.cancellation_reason,
                "date": appointment.date.isoformat(),
                "start_time": appointment.start_time,
            },
        ))

    logger.info(f"Cancelled appointment {appointment.id} for tenant {tenant_id}")
    return result


@executor_registry.register(NodeType.RESCHEDULE_APPOINTMENT.value, "reschedule")
async def reschedule_appointment(
    tenant_id: str,
    context: ConversationContext,
    node_data: Dict[str, Any],
    db: Session
) -> NodeResult:
    ctx = context.copy()
    target_date = parse_date(ctx.selected_date)
    if not ctx.appointment_id or target_date is None or not ctx.selected_time_slot:
        return _failure(
            ctx, node_data, "Necesito la cita, la nueva fecha y el horario para reprogramar.", "missing_data"
        )

    try:
        current = appointment_service.get_appointment(db, tenant_id, ctx.appointment_id)
    except AppointmentNotFoundError:
        return _failure(ctx, node_data, "No encontré la cita a reprogramar.", "appointment_not_found")

    duration = time_to_minutes(current.end_time) - time_to_minutes(current.start_time)
    slot = resolve_slot(ctx.selected_time_slot, ctx.available_slots, duration)
    if slot is None or slot[1] is None:
        return _failure(ctx, node_data, "No pude identificar el horario elegido.", "invalid_slot")

    max_attempts = int(node_data.get("max_reschedule_attempts") or DEFAULT_MAX_RESCHEDULE_ATTEMPTS)
    try:
        appointment = appointment_service.reschedule_appointment(
            db,
            tenant_id,
            current.id,
            target_date,
            slot[0],
            slot[1],
            max_attempts=max_attempts,
            commit=False,
        )
    except RescheduleLimitError:
        return _failure(
            ctx, node_data, "Tu cita alcanzó el número máximo de reprogramaciones.", "reschedule_limit"
        )
    except SlotUnavailableError:
        return _failure(ctx, node_data, "Lo siento, ese horario ya no está disponible.", "slot_unavailable")
    except AppointmentError:
        return _failure(ctx, node_data, "Esa cita ya no se puede reprogramar.", "not_reschedulable")

    lead_id = appointment.lead_id or ctx.lead_id
    if lead_id and node_data.get("update_lead_on_reschedule"):
        lead_service.update_stage(
            db, tenant_id, lead_id, "confirmed", reason="appointment_rescheduled", commit=False
        )

    ctx.update({
        "appointment_date": format_date(target_date),
        "appointment_time": appointment.start_time,
        "appointment_status": appointment.status,
        "reschedule_count": appointment.reschedule_count,
    })
    result = NodeResult("success", ctx, ctx.render(node_data.get("success_message") or RESCHEDULED_MESSAGE))

    if node_data.get("notify_agent"):
        result.queue_notification(notification_service.build_notification(
            tenant_id,
            "appointment_rescheduled",
            agent_id=appointment.agent_id,
            data={
                "appointment_id": appointment.id,
                "lead_id": lead_id,
                "date": target_date.isoformat(),
                "start_time": appointment.start_time,
                "reschedule_count": appointment.reschedule_count,
            },
        ))

    logger.info(f"Rescheduled appointment {appointment.id} to {target_date} {appointment.start_time}")
    return result
