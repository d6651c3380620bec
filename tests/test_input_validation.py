"""Tests for input node reply validation."""

import pytest

from chatbot.conversation.input_validation import InputType, parse_input_type, retry_message, validate_input


class TestValidateInput:

    @pytest.mark.parametrize("value,input_type,expected", [
        ("Ana López", "text", (True, "Ana López")),
        ("  ANA@Example.com ", "email", (True, "ana@example.com")),
        ("ana@", "email", (False, None)),
        ("+52 55 1234 5678", "phone", (True, "+525512345678")),
        ("12", "phone", (False, None)),
        ("3,5", "number", (True, 3.5)),
        ("40", "number", (True, 40)),
        ("cuarenta", "number", (False, None)),
        ("15/03/2030", "date", (True, "2030-03-15")),
        ("2030-03-15", "date", (True, "2030-03-15")),
        ("mañana", "date", (False, None)),
        ("   ", "text", (False, None)),
    ])
    def test_validation(self, value, input_type, expected):
        assert validate_input(value, input_type) == expected

    def test_custom_pattern(self):
        assert validate_input("AB-123", "text", r"[A-Z]{2}-\d{3}") == (True, "AB-123")
        assert validate_input("AB123", "text", r"[A-Z]{2}-\d{3}") == (False, None)

    def test_invalid_pattern_rejects(self):
        assert validate_input("x", "text", "[") == (False, None)


def test_parse_input_type_defaults_to_text():
    assert parse_input_type("EMAIL") == InputType.EMAIL
    assert parse_input_type(None) == InputType.TEXT
    assert parse_input_type("signature") == InputType.TEXT


def test_retry_message_per_type():
    assert "correo" in retry_message("email")
    assert retry_message(InputType.TEXT) != retry_message(InputType.DATE)
