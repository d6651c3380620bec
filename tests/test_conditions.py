"""Tests for condition evaluation."""

import pytest

from chatbot.conversation.conditions import (
    ConditionError,
    condition_handle,
    evaluate_condition,
    evaluate_expression,
)
from chatbot.conversation.context import ConversationContext


@pytest.fixture
def context():
    return ConversationContext({
        "lead_score": 82,
        "city": "CDMX",
        "answers": {"budget": "yes"},
        "tags": ["vip", "repeat"],
        "email": "",
    })


class TestExpressions:

    @pytest.mark.parametrize("expression,expected", [
        ("lead_score >= 70", True),
        ("lead_score > 90", False),
        ("lower(city) == 'cdmx'", True),
        ("answers.budget == 'yes'", True),
        ("'vip' in tags", True),
        ("len(tags) == 2 and lead_score < 100", True),
        ("lead_score === 82 && city !== 'GDL'", True),
        ("missing_var == null", True),
        ("not missing_var", True),
        ("lead_score > 50 || false", True),
    ])
    def test_evaluate_expression(self, context, expression, expected):
        assert evaluate_expression(expression, context) is expected

    def test_placeholders_are_rendered_first(self, context):
        assert evaluate_expression("'{{city}}' == 'CDMX'", context) is True

    def test_type_mismatch_compares_false(self, context):
        assert evaluate_expression("missing_var > 3", context) is False

    @pytest.mark.parametrize("expression", [
        "__import__('os').system('ls')",
        "open('/etc/passwd')",
        "lambda: 1",
        "lead_score >",
        "",
    ])
    def test_disallowed_expressions(self, context, expression):
        with pytest.raises(ConditionError):
            evaluate_expression(expression, context)


class TestStructuredConditions:

    @pytest.mark.parametrize("condition,expected", [
        ({"variable": "city", "operator": "equals", "value": "cdmx"}, True),
        ({"variable": "city", "operator": "not_equals", "value": "GDL"}, True),
        ({"variable": "email", "operator": "exists"}, False),
        ({"variable": "email", "operator": "not_exists"}, True),
        ({"variable": "tags", "operator": "contains", "value": "vip"}, True),
        ({"variable": "city", "operator": "contains", "value": "dm"}, True),
        ({"variable": "lead_score", "operator": "greater_than", "value": "80"}, True),
        ({"variable": "lead_score", "operator": "less_than", "value": 50}, False),
        ({"variable": "answers.budget", "value": "YES"}, True),
    ])
    def test_operators(self, context, condition, expected):
        assert evaluate_condition(condition, context) is expected

    def test_unknown_operator(self, context):
        with pytest.raises(ConditionError):
            evaluate_condition({"variable": "city", "operator": "matches", "value": "x"}, context)


class TestConditionHandle:

    def test_yes_and_no(self, context):
        assert condition_handle({"condition": "lead_score >= 70"}, context) == "yes"
        assert condition_handle({"condition": "lead_score >= 90"}, context) == "no"

    def test_inline_variable_form(self, context):
        data = {"variable": "city", "operator": "equals", "value": "CDMX"}

        assert condition_handle(data, context) == "yes"

    def test_errors_take_no(self, context):
        assert condition_handle({"condition": "import os"}, context) == "no"
        assert condition_handle({}, context) == "no"
