"""
Validation of free-text replies to input nodes.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?\d{7,15}$")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d/%m/%y")


class InputType(Enum):
    """Types of values an input node can collect."""
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    NUMBER = "number"
    DATE = "date"


RETRY_MESSAGES = {
    InputType.TEXT: "No entendí tu respuesta, ¿podrías intentarlo de nuevo?",
    InputType.EMAIL: "Ese correo no parece válido. Escríbelo como nombre@dominio.com, por favor.",
    InputType.PHONE: "Ese número no parece válido. Escribe solo dígitos, con lada si aplica.",
    InputType.NUMBER: "Necesito un número, ¿podrías escribirlo de nuevo?",
    InputType.DATE: "No reconocí la fecha. Usa el formato DD/MM/AAAA, por favor.",
}


def parse_input_type(value: Optional[str]) -> InputType:
    try:
        return InputType((value or "text").lower())
    except ValueError:
        return InputType.TEXT


def validate_input(value: str, input_type: Any = InputType.TEXT, pattern: Optional[str] = None) -> Tuple[bool, Any]:
    """Validate a reply and return (is_valid, processed_value)."""
    if not isinstance(input_type, InputType):
        input_type = parse_input_type(input_type)
    value = (value or "").strip()
    if not value:
        return False, None

    if pattern:
        try:
            if not re.fullmatch(pattern, value):
                return False, None
        except re.error:
            return False, None

    if input_type == InputType.EMAIL:
        return (True, value.lower()) if EMAIL_PATTERN.match(value) else (False, None)

    if input_type == InputType.PHONE:
        clean_phone = re.sub(r"[^\d+]", "", value)
        return (True, clean_phone) if PHONE_PATTERN.match(clean_phone) else (False, None)

    if input_type == InputType.NUMBER:
        try:
            number = float(value.replace(",", "."))
        except ValueError:
            return False, None
        return True, int(number) if number.is_integer() else number

    if input_type == InputType.DATE:
        for fmt in DATE_FORMATS:
            try:
                return True, datetime.strptime(value, fmt).date().isoformat()
            except ValueError:
                continue
        return False, None

    return True, value


def retry_message(input_type: Any) -> str:
    if not isinstance(input_type, InputType):
        input_type = parse_input_type(input_type)
    return RETRY_MESSAGES[input_type]
