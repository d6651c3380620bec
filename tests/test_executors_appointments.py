"""Tests for the appointment node executors."""

import pytest
from datetime import date, timedelta

from app.models import BusinessHoursException
from app.services.appointment_service import appointment_service
from app.services.lead_service import lead_service

from chatbot.conversation.context import ConversationContext
from chatbot.executors import executor_registry
from chatbot.executors.appointments import (
    CANCELLED_MESSAGE,
    REASON_PROMPT,
    book_appointment,
    cancel_appointment,
    check_availability,
    format_date,
    parse_date,
    reschedule_appointment,
    resolve_slot,
    summarize_slots,
)


@pytest.fixture
def lead(db_session, tenant):
    return lead_service.create_lead(db_session, tenant.id, {"full_name": "Ana Pérez", "email": "ana@example.com"})


def _slots(*starts):
    return [{"start_time": s, "end_time": f"{s[:2]}:30"} for s in starts]


class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("2030-03-05", date(2030, 3, 5)),
        ("05/03/2030", date(2030, 3, 5)),
        ("2030-03-05T10:00:00", date(2030, 3, 5)),
        (date(2030, 3, 5), date(2030, 3, 5)),
        ("mañana", None),
        ("", None),
        (None, None),
    ])
    def test_parse_date(self, value, expected):
        assert parse_date(value) == expected

    def test_format_date(self):
        assert format_date(date(2030, 3, 5)) == "05/03/2030"

    def test_resolve_slot(self):
        slots = _slots("09:00", "10:00")

        assert resolve_slot("10:00", slots) == ("10:00", "10:30")
        assert resolve_slot("9:00", slots) == ("09:00", "09:30")
        assert resolve_slot({"start_time": "11:00", "end_time": "12:00"}, slots) == ("11:00", "12:00")
        assert resolve_slot("14:00", slots, duration=45) == ("14:00", "14:45")
        assert resolve_slot("14:00", slots) == ("14:00", None)
        assert resolve_slot("tarde", slots) is None
        assert resolve_slot(None, slots) is None

    def test_summarize_slots(self):
        assert summarize_slots(_slots("09:00", "10:00")) == "09:00, 10:00"
        assert summarize_slots(_slots("09:00", "10:00", "11:00", "12:00")) == "09:00, 10:00, 11:00, entre otros"

    def test_registry_aliases(self):
        assert executor_registry.get("checkAvailability") is check_availability
        assert executor_registry.get("book") is book_appointment
        assert executor_registry.get("cancel") is cancel_appointment
        assert executor_registry.get("reschedule_appointment") is reschedule_appointment


class TestCheckAvailability:
    """Test the availability lookup node."""

    @pytest.mark.asyncio
    async def test_available(self, db_session, tenant, business_hours, booking_date):
        context = ConversationContext({"selected_date": booking_date.isoformat()})

        result = await check_availability(tenant.id, context, {}, db_session)

        assert result.handle == "available"
        assert result.message == (
            f"Tenemos estos horarios disponibles para el {format_date(booking_date)}: "
            "09:00, 09:30, 10:00, entre otros."
        )
        assert len(result.context.available_slots) == 16
        assert result.context.get("business_hours")["open_time"] == "09:00"
        assert "available_slots" not in context

    @pytest.mark.asyncio
    async def test_unavailable_suggests_next_date(self, db_session, tenant, business_hours, booking_date):
        db_session.add(BusinessHoursException(tenant_id=tenant.id, date=booking_date, is_closed=True))
        db_session.commit()
        context = ConversationContext({"selected_date": booking_date.isoformat()})

        result = await check_availability(tenant.id, context, {}, db_session)

        next_date = booking_date + timedelta(days=1)
        assert result.handle == "unavailable"
        assert result.context.get("next_available_date") == next_date.isoformat()
        assert result.message.endswith(f"El siguiente día con horarios es el {format_date(next_date)}.")
        assert result.metadata["is_closed"] is True

    @pytest.mark.asyncio
    async def test_unavailable_without_hours(self, db_session, tenant, booking_date):
        context = ConversationContext({"selected_date": booking_date.isoformat()})

        result = await check_availability(
            tenant.id, context, {"unavailable_message": "Sin horarios el {{date}}"}, db_session
        )

        assert result.handle == "unavailable"
        assert result.message == f"Sin horarios el {format_date(booking_date)}"


class TestBookAppointment:

    def _context(self, booking_date, lead=None, slot="10:00"):
        variables = {"selected_date": booking_date.isoformat(), "selected_time_slot": slot, "customer_name": "Ana"}
        if lead is not None:
            variables["lead_id"] = lead.id
        return ConversationContext(variables)

    @pytest.mark.asyncio
    async def test_books_and_confirms_lead(self, db_session, tenant, business_hours, booking_date, lead):
        result = await book_appointment(tenant.id, self._context(booking_date, lead), {}, db_session)

        assert result.handle == "success"
        assert result.message == f"¡Listo! Tu cita quedó agendada para el {format_date(booking_date)} a las 10:00."
        appointment = appointment_service.get_appointment(db_session, tenant.id, result.context.appointment_id)
        assert appointment.end_time == "10:30"
        assert appointment.lead_id == lead.id
        assert appointment.customer_email is None
        assert lead_service.get_lead(db_session, tenant.id, lead.id).stage == "confirmed"
        assert result.notifications == []

    @pytest.mark.asyncio
    async def test_custom_stage_and_notification(self, db_session, tenant, business_hours, booking_date, lead):
        result = await book_appointment(
            tenant.id,
            self._context(booking_date, lead),
            {"lead_stage": "opportunity", "notify_agent": True, "create_follow_up": True},
            db_session,
        )

        assert lead_service.get_lead(db_session, tenant.id, lead.id).stage == "opportunity"
        assert len(result.notifications) == 1
        assert result.notifications[0]["event"] == "appointment_booked"
        assert result.notifications[0]["data"]["start_time"] == "10:00"

    @pytest.mark.asyncio
    async def test_taken_slot_fails(self, db_session, tenant, business_hours, booking_date):
        appointment_service.create_appointment(
            db_session, tenant.id, {"date": booking_date, "start_time": "10:00", "end_time": "10:30"}
        )

        result = await book_appointment(tenant.id, self._context(booking_date), {}, db_session)

        assert result.handle == "failure"
        assert result.metadata["reason"] == "slot_unavailable"

    @pytest.mark.asyncio
    async def test_missing_slot_fails(self, db_session, tenant, business_hours, booking_date):
        result = await book_appointment(
            tenant.id, self._context(booking_date, slot=None), {"failure_message": "Elige un horario"}, db_session
        )

        assert result.handle == "failure"
        assert result.message == "Elige un horario"
        assert result.metadata["reason"] == "missing_slot"


class TestCancelAppointment:

    @pytest.fixture
    def appointment(self, db_session, tenant, booking_date, lead):
        return appointment_service.create_appointment(
            db_session, tenant.id,
            {"date": booking_date, "start_time": "10:00", "end_time": "10:30", "lead_id": lead.id},
        )

    @pytest.mark.asyncio
    async def test_cancel(self, db_session, tenant, appointment):
        context = ConversationContext({"appointment_id": appointment.id, "cancellation_reason": "Viaje"})

        result = await cancel_appointment(tenant.id, context, {"notify_agent": True}, db_session)

        assert result.handle == "success"
        assert result.message == CANCELLED_MESSAGE
        assert result.context.get("appointment_status") == "cancelled"
        assert result.notifications[0]["data"]["reason"] == "Viaje"
        db_session.refresh(appointment)
        assert appointment.status == "cancelled"

    @pytest.mark.asyncio
    async def test_asks_for_reason(self, db_session, tenant, appointment):
        context = ConversationContext({"appointment_id": appointment.id})

        result = await cancel_appointment(tenant.id, context, {"require_reason": True}, db_session)

        assert result.handle == "needReason"
        assert result.message == REASON_PROMPT
        db_session.refresh(appointment)
        assert appointment.status == "scheduled"

    @pytest.mark.asyncio
    async def test_blacklist_slot_and_lead_stage(self, db_session, tenant, appointment, booking_date, lead):
        context = ConversationContext({"appointment_id": appointment.id})

        await cancel_appointment(
            tenant.id, context, {"blacklist_slot": True, "update_lead_on_cancel": True}, db_session
        )

        assert appointment_service.has_conflict(db_session, tenant.id, booking_date, "10:00", "10:30")
        assert lead_service.get_lead(db_session, tenant.id, lead.id).stage == "prospecting"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("appointment_id,reason", [(None, "missing_appointment"), ("nope", "appointment_not_found")])
    async def test_missing_appointment(self, db_session, tenant, appointment_id, reason):
        context = ConversationContext({"appointment_id": appointment_id})

        result = await cancel_appointment(tenant.id, context, {}, db_session)

        assert result.handle == "failure"
        assert result.metadata["reason"] == reason

    @pytest.mark.asyncio
    async def test_already_cancelled(self, db_session, tenant, appointment):
        appointment_service.cancel_appointment(db_session, tenant.id, appointment.id)

        result = await cancel_appointment(tenant.id, ConversationContext({"appointment_id": appointment.id}), {}, db_session)

        assert result.metadata["reason"] == "already_cancelled"


class TestRescheduleAppointment:

    @pytest.fixture
    def appointment(self, db_session, tenant, booking_date):
        return appointment_service.create_appointment(
            db_session, tenant.id, {"date": booking_date, "start_time": "10:00", "end_time": "11:00"}
        )

    def _context(self, appointment, new_date, slot):
        return ConversationContext({
            "appointment_id": appointment.id,
            "selected_date": new_date.isoformat(),
            "selected_time_slot": slot,
        })

    @pytest.mark.asyncio
    async def test_reschedule_keeps_duration(self, db_session, tenant, appointment, booking_date):
        new_date = booking_date + timedelta(days=1)

        result = await reschedule_appointment(tenant.id, self._context(appointment, new_date, "15:00"), {}, db_session)

        assert result.handle == "success"
        assert result.context.get("reschedule_count") == 1
        db_session.refresh(appointment)
        assert (appointment.date, appointment.start_time, appointment.end_time) == (new_date, "15:00", "16:00")
        assert appointment.status == "confirmed"

    @pytest.mark.asyncio
    async def test_reschedule_limit(self, db_session, tenant, appointment, booking_date):
        node_data = {"max_reschedule_attempts": 1}
        await reschedule_appointment(tenant.id, self._context(appointment, booking_date, "12:00"), node_data, db_session)

        result = await reschedule_appointment(
            tenant.id, self._context(appointment, booking_date, "14:00"), node_data, db_session
        )

        assert result.handle == "failure"
        assert result.metadata["reason"] == "reschedule_limit"

    @pytest.mark.asyncio
    async def test_missing_data(self, db_session, tenant, appointment):
        context = ConversationContext({"appointment_id": appointment.id})

        result = await reschedule_appointment(tenant.id, context, {}, db_session)

        assert result.metadata["reason"] == "missing_data"
