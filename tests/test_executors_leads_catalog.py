"""Tests for lead qualification and catalog listing nodes."""

import pytest
from decimal import Decimal

from app.models import Product, Service
from app.services.lead_service import lead_service

from chatbot.conversation.context import ConversationContext
from chatbot.executors import executor_registry
from chatbot.executors.catalog import (
    NO_PRODUCTS_MESSAGE,
    format_price,
    list_products,
    list_services,
)
from chatbot.executors.leads import (
    is_affirmative,
    lead_qualification,
    qualification_level,
    score_answers,
)

QUESTIONS = [
    {"id": "budget", "weight": 2},
    {"id": "urgency", "weight": 1},
]


class TestScoring:

    @pytest.mark.parametrize("answer,expected", [
        ("sí", True),
        ("Si", True),
        ("yes", True),
        (True, True),
        ({"value": "1"}, True),
        ("no", False),
        (None, False),
        ("quizá", False),
    ])
    def test_is_affirmative(self, answer, expected):
        assert is_affirmative(answer) is expected

    def test_weighted_score(self):
        assert score_answers(QUESTIONS, {"budget": "sí", "urgency": "no"}) == 67
        assert score_answers(QUESTIONS, {"budget": "sí", "urgency": "sí"}) == 100
        assert score_answers(QUESTIONS, {}) == 0
        assert score_answers([], {"budget": "sí"}) == 0

    @pytest.mark.parametrize("score,level", [(70, "high"), (69, "medium"), (40, "medium"), (39, "low")])
    def test_default_thresholds(self, score, level):
        assert qualification_level(score, {}) == level

    def test_custom_thresholds(self):
        assert qualification_level(60, {"high_score_threshold": 50}) == "high"


class TestLeadQualification:
    """Test the qualification node against a stored lead."""

    @pytest.fixture
    def lead(self, db_session, tenant):
        return lead_service.create_lead(db_session, tenant.id, {"full_name": "Carlos Méndez"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answers,level,stage", [
        ({"budget": "sí", "urgency": "sí"}, "high", "opportunity"),
        ({"budget": "sí", "urgency": "no"}, "medium", "qualification"),
        ({"budget": "no", "urgency": "sí"}, "low", "prospecting"),
    ])
    async def test_levels_move_stage(self, db_session, tenant, lead, answers, level, stage):
        context = ConversationContext({"lead_id": lead.id, "answers": answers})

        result = await lead_qualification(tenant.id, context, {"questions": QUESTIONS}, db_session)

        assert result.handle == level
        assert result.context.get("lead_stage") == stage
        stored = lead_service.get_lead(db_session, tenant.id, lead.id)
        assert stored.stage == stage
        assert stored.lead_metadata["qualification_level"] == level

    @pytest.mark.asyncio
    async def test_level_message(self, db_session, tenant, lead):
        context = ConversationContext({"lead_id": lead.id, "answers": {"budget": "sí", "urgency": "sí"}})

        result = await lead_qualification(
            tenant.id, context,
            {"questions": QUESTIONS, "high_message": "Puntaje {{lead_score}}", "high_stage": "confirmed"},
            db_session,
        )

        assert result.message == "Puntaje 100"
        assert lead_service.get_lead(db_session, tenant.id, lead.id).stage == "confirmed"

    @pytest.mark.asyncio
    async def test_without_lead(self, db_session, tenant):
        result = await lead_qualification(tenant.id, ConversationContext(), {"questions": QUESTIONS}, db_session)

        assert result.handle == "low"
        assert result.metadata["reason"] == "missing_lead"

    @pytest.mark.asyncio
    async def test_unknown_lead(self, db_session, tenant):
        context = ConversationContext({"lead_id": "missing"})

        result = await lead_qualification(tenant.id, context, {"questions": QUESTIONS}, db_session)

        assert result.handle == "low"
        assert result.metadata["reason"] == "lead_not_found"


class TestCatalog:

    @pytest.fixture
    def catalog(self, db_session, tenant):
        db_session.add_all([
            Service(tenant_id=tenant.id, name="Limpieza dental", price=Decimal("800"), duration=45, category="dental"),
            Service(tenant_id=tenant.id, name="Blanqueamiento", price=Decimal("3500.50"), category="estetica",
                    image_url="https://cdn.example.com/blanqueamiento.jpg"),
            Service(tenant_id=tenant.id, name="Valoración", price=None),
            Service(tenant_id=tenant.id, name="Ortodoncia", price=Decimal("15000"), is_active=False),
            Product(tenant_id=tenant.id, name="Cepillo", price=Decimal("120"), in_stock=True),
            Product(tenant_id=tenant.id, name="Hilo dental", price=Decimal("60"), in_stock=False),
        ])
        db_session.commit()

    @pytest.mark.parametrize("price,expected", [
        (Decimal("1500"), "$1,500"),
        (Decimal("1500.00"), "$1,500"),
        (Decimal("99.5"), "$99.50"),
        (None, "consultar"),
    ])
    def test_format_price(self, price, expected):
        assert format_price(price) == expected

    def test_registry_aliases(self):
        assert executor_registry.get("serviceList") is list_services
        assert executor_registry.get("productList") is list_products

    @pytest.mark.asyncio
    async def test_list_services(self, db_session, tenant, catalog):
        result = await list_services(tenant.id, ConversationContext(), {}, db_session)

        assert result.handle == "response"
        assert result.message == (
            "Estos son nuestros servicios:\n"
            "• Blanqueamiento - $3,500.50\n"
            "• Limpieza dental - $800 (45 min)\n"
            "• Valoración - consultar"
        )
        assert [s["name"] for s in result.context.get("available_services")] == [
            "Blanqueamiento", "Limpieza dental", "Valoración"
        ]

    @pytest.mark.asyncio
    async def test_services_filtered_sorted_limited(self, db_session, tenant, catalog):
        node_data = {"filter_by_price": True, "max_price": 1000, "sort_by": "price", "limit": 5}

        result = await list_services(tenant.id, ConversationContext(), node_data, db_session)

        assert [s["name"] for s in result.context.get("available_services")] == ["Limpieza dental"]

    @pytest.mark.asyncio
    async def test_services_by_category_with_images(self, db_session, tenant, catalog):
        context = ConversationContext({"selected_category": "estetica"})

        result = await list_services(tenant.id, context, {"include_images": True}, db_session)

        assert result.metadata["count"] == 1
        assert result.metadata["media"] == [{
            "type": "image",
            "url": "https://cdn.example.com/blanqueamiento.jpg",
            "caption": "Blanqueamiento",
        }]

    @pytest.mark.asyncio
    async def test_products_in_stock(self, db_session, tenant, catalog):
        result = await list_products(tenant.id, ConversationContext(), {"show_only_in_stock": True}, db_session)

        assert result.message == "Estos son nuestros productos:\n• Cepillo - $120"

    @pytest.mark.asyncio
    async def test_no_products(self, db_session, tenant):
        result = await list_products(tenant.id, ConversationContext(), {}, db_session)

        assert result.handle == "response"
        assert result.message == NO_PRODUCTS_MESSAGE
        assert result.context.get("available_products") == []
