"""Tests for funnel display and visibility rules."""

import pytest

from app.services import sales_funnel


def _lead(**fields):
    return {"id": fields.pop("id", "lead-1"), "full_name": "Lead", "status": "active", **fields}


class TestDisplayStage:

    @pytest.mark.parametrize("stage,expected", [
        ("first_contact", "new"),
        ("new", "new"),
        ("qualification", "qualification"),
        ("closed_won", "closed"),
        ("custom_stage", "custom_stage"),
        (None, "new"),
    ])
    def test_display_stage(self, stage, expected):
        assert sales_funnel.display_stage(_lead(stage=stage)) == expected

    def test_valid_stages(self):
        assert "first_contact" in sales_funnel.VALID_STAGES
        assert "hot" not in sales_funnel.VALID_STAGES


class TestVisibility:
    """Which leads the kanban board shows."""

    def test_visible_lead(self):
        assert sales_funnel.is_visible_in_funnel(_lead(stage="prospecting"))

    @pytest.mark.parametrize("fields,reasons", [
        ({"status": "closed", "stage": "prospecting"}, ["status_closed"]),
        ({"stage": "closed_lost"}, ["stage_closed", "stage_not_in_funnel"]),
        ({"stage": "opportunity", "metadata": {"removed_from_funnel": True}}, ["removed_from_funnel"]),
        ({"stage": "new", "is_deleted": True}, ["deleted"]),
        ({"stage": "confirmed"}, ["stage_not_in_funnel"]),
        ({"status": "closed", "stage": "closed"}, ["status_closed", "stage_closed", "stage_not_in_funnel"]),
    ])
    def test_exclusion_reasons(self, fields, reasons):
        assert sales_funnel.exclusion_reasons(_lead(**fields)) == reasons

    def test_works_with_attribute_objects(self):
        class Row:
            stage = "qualification"
            status = "active"
            lead_metadata = {"removed_from_funnel": True}
            is_deleted = False

        assert sales_funnel.exclusion_reasons(Row()) == ["removed_from_funnel"]


class TestBoardAndAnalysis:

    @pytest.fixture
    def leads(self):
        return [
            _lead(id="a", stage="first_contact"),
            _lead(id="b", stage="new"),
            _lead(id="c", stage="opportunity"),
            _lead(id="d", stage="confirmed"),
            _lead(id="e", stage="prospecting", status="closed"),
        ]

    def test_build_funnel_board(self, leads):
        board = sales_funnel.build_funnel_board(leads)

        assert board["stages"] == ["new", "prospecting", "qualification", "opportunity"]
        assert [l["id"] for l in board["columns"]["new"]] == ["a", "b"]
        assert board["totals"] == {"new": 2, "prospecting": 0, "qualification": 0, "opportunity": 1}
        assert board["total_visible"] == 3

    def test_analyze_funnel(self, leads):
        analysis = sales_funnel.analyze_funnel(leads)

        assert analysis["total_leads"] == 5
        assert analysis["visible_leads"] == 3
        assert analysis["excluded_leads"] == 2
        assert analysis["exclusion_reasons"] == {"stage_not_in_funnel": 1, "status_closed": 1}
        assert analysis["stage_counts"]["first_contact"] == 1
        assert {e["id"] for e in analysis["excluded"]} == {"d", "e"}

    def test_analysis_counts_every_reason(self):
        analysis = sales_funnel.analyze_funnel([
            _lead(id="a", stage="closed_won", status="closed"),
            _lead(id="b", stage="confirmed", is_deleted=True),
        ])

        assert analysis["excluded_leads"] == 2
        assert analysis["exclusion_reasons"] == {
            "status_closed": 1, "stage_closed": 1, "stage_not_in_funnel": 2, "deleted": 1,
        }
        assert analysis["excluded"][1]["reasons"] == ["deleted", "stage_not_in_funnel"]
