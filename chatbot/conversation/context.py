"""
Conversation context: the accumulating variable map threaded through node executions.
"""

import copy
import logging
import re
from typing import Dict, List, Optional, Any

from app.core.config import settings

logger = logging.getLogger(__name__)

VISIT_COUNT_KEY = "__visit_count"
WAITING_FOR_KEY = "__waiting_for"
INPUT_RETRIES_KEY = "__input_retries"

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def default_variables() -> Dict[str, Any]:
    """Fallback values for common placeholders when the context has none."""
    return {
        "user_name": settings.DEFAULT_USER_NAME,
        "customer_name": settings.DEFAULT_USER_NAME,
        "company_name": settings.DEFAULT_COMPANY_NAME,
        "tenant_name": settings.DEFAULT_COMPANY_NAME,
        "business_name": settings.DEFAULT_COMPANY_NAME,
    }


class ConversationContext:
    """JSON-serialisable variable map with typed accessors for the keys executors share."""

    def __init__(self, variables: Optional[Dict[str, Any]] = None):
        self._variables: Dict[str, Any] = dict(variables or {})

    # -- generic access -------------------------------------------------

    def get(self, name: str, default: Any = None) -> Any:
        return self._variables.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._variables[name] = value

    def update(self, values: Dict[str, Any]) -> None:
        self._variables.update(values)

    def pop(self, name: str, default: Any = None) -> Any:
        return self._variables.pop(name, default)

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def copy(self) -> "ConversationContext":
        return ConversationContext(copy.deepcopy(self._variables))

    def with_updates(self, **values: Any) -> "ConversationContext":
        """Return a copy with ``values`` applied; the receiver is left untouched."""
        updated = self.copy()
        updated.update(values)
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._variables)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ConversationContext":
        return cls(copy.deepcopy(data or {}))

    def public_variables(self) -> Dict[str, Any]:
        """Variables without the engine's bookkeeping keys."""
        return {k: v for k, v in self._variables.items() if not k.startswith("__")}

    def resolve(self, path: str) -> Any:
        """Look up a dotted path (``lead.full_name``) through nested dicts."""
        current: Any = self._variables
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return None
        return current

    # -- well-known keys ------------------------------------------------

    @property
    def lead_id(self) -> Optional[str]:
        return self._variables.get("lead_id")

    @property
    def appointment_id(self) -> Optional[str]:
        return self._variables.get("appointment_id")

    @property
    def selected_date(self) -> Optional[str]:
        return self._variables.get("selected_date")

    @property
    def selected_time_slot(self) -> Any:
        return self._variables.get("selected_time_slot")

    @property
    def available_slots(self) -> List[Dict[str, Any]]:
        return self._variables.get("available_slots") or []

    @property
    def cancellation_reason(self) -> Optional[str]:
        return self._variables.get("cancellation_reason")

    @property
    def answers(self) -> Dict[str, Any]:
        return self._variables.get("answers") or {}

    @property
    def agent_id(self) -> Optional[str]:
        return self._variables.get("agent_id")

    @property
    def appointment_type_id(self) -> Optional[str]:
        return self._variables.get("appointment_type_id")

    @property
    def location_id(self) -> Optional[str]:
        return self._variables.get("location_id")

    @property
    def last_user_message(self) -> str:
        return self._variables.get("last_user_message") or ""

    # -- engine bookkeeping ---------------------------------------------

    def register_visit(self, node_id: str) -> int:
        visits = dict(self._variables.get(VISIT_COUNT_KEY) or {})
        visits[node_id] = visits.get(node_id, 0) + 1
        self._variables[VISIT_COUNT_KEY] = visits
        return visits[node_id]

    def reset_visits(self) -> None:
        self._variables.pop(VISIT_COUNT_KEY, None)

    @property
    def waiting_for(self) -> Optional[Dict[str, Any]]:
        return self._variables.get(WAITING_FOR_KEY)

    def set_waiting_for(self, waiting: Optional[Dict[str, Any]]) -> None:
        if waiting is None:
            self._variables.pop(WAITING_FOR_KEY, None)
        else:
            self._variables[WAITING_FOR_KEY] = waiting

    def increment_input_retry(self, node_id: str) -> int:
        retries = dict(self._variables.get(INPUT_RETRIES_KEY) or {})
        retries[node_id] = retries.get(node_id, 0) + 1
        self._variables[INPUT_RETRIES_KEY] = retries
        return retries[node_id]

    def clear_input_retries(self, node_id: str) -> None:
        retries = dict(self._variables.get(INPUT_RETRIES_KEY) or {})
        if retries.pop(node_id, None) is not None:
            self._variables[INPUT_RETRIES_KEY] = retries

    # -- templating -----------------------------------------------------

    def render(self, template: Optional[str], extra: Optional[Dict[str, Any]] = None) -> str:
        """Replace ``{{name}}`` placeholders; unknown names are left as written."""
        if not template:
            return ""

        defaults = default_variables()

        def replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if extra and name in extra and extra[name] is not None:
                return str(extra[name])
            value = self.resolve(name)
            if value is None or value == "":
                value = defaults.get(name)
            if value is None:
                return match.group(0)
            return str(value)

        return PLACEHOLDER_PATTERN.sub(replace, str(template))

    def __repr__(self) -> str:
        return f"ConversationContext({self.public_variables()!r})"
