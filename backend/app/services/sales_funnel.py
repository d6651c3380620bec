"""
Sales Funnel Rules

Single definition of how lead stages are displayed on the funnel board and
which leads are visible there. The API, the chatbot executors and the
diagnostic CLI all go through these functions.
"""

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_STAGE = "first_contact"

STAGE_DISPLAY_MAP: Dict[str, str] = {
    "first_contact": "new",
    "new": "new",
    "prospecting": "prospecting",
    "qualification": "qualification",
    "opportunity": "opportunity",
    "confirmed": "confirmed",
    "closed": "closed",
    "closed_won": "closed",
    "closed_lost": "closed",
}

# Columns of the kanban board, in order.
FUNNEL_STAGES: List[str] = ["new", "prospecting", "qualification", "opportunity"]

VALID_STAGES = frozenset(STAGE_DISPLAY_MAP)

CLOSED_STATUS = "closed"
CLOSED_STAGES = frozenset({"closed", "closed_won", "closed_lost"})


def _get(lead: Any, name: str) -> Any:
    if isinstance(lead, dict):
        if name == "lead_metadata":
            return lead.get("metadata", lead.get("lead_metadata"))
        return lead.get(name)
    return getattr(lead, name, None)


def raw_stage(lead: Any) -> str:
    return _get(lead, "stage") or DEFAULT_STAGE


def display_stage(lead: Any) -> str:
    """Board column for a lead; unknown stages are shown as they are stored."""
    stage = raw_stage(lead)
    return STAGE_DISPLAY_MAP.get(stage, stage)


def exclusion_reasons(lead: Any) -> List[str]:
    """Every reason a lead is hidden from the funnel board; empty when it is visible."""
    reasons = []
    metadata = _get(lead, "lead_metadata") or {}

    if _get(lead, "status") == CLOSED_STATUS:
        reasons.append("status_closed")
    if raw_stage(lead) in CLOSED_STAGES:
        reasons.append("stage_closed")
    if metadata.get("removed_from_funnel"):
        reasons.append("removed_from_funnel")
    if _get(lead, "is_deleted"):
        reasons.append("deleted")
    if display_stage(lead) not in FUNNEL_STAGES:
        reasons.append("stage_not_in_funnel")

    return reasons


def is_visible_in_funnel(lead: Any) -> bool:
    return not exclusion_reasons(lead)


def build_funnel_board(leads: Iterable[Any]) -> Dict[str, Any]:
    """Group visible leads by board column."""
    columns: Dict[str, List[Any]] = {stage: [] for stage in FUNNEL_STAGES}
    for lead in leads:
        if is_visible_in_funnel(lead):
            columns[display_stage(lead)].append(lead)

    return {
        "stages": FUNNEL_STAGES,
        "columns": columns,
        "totals": {stage: len(items) for stage, items in columns.items()},
        "total_visible": sum(len(items) for items in columns.values()),
    }


def analyze_funnel(leads: Iterable[Any]) -> Dict[str, Any]:
    """Explain the difference between all leads and those shown on the board."""
    leads = list(leads)
    reason_counts: Counter = Counter()
    stage_counts: Counter = Counter()
    excluded: List[Dict[str, Optional[str]]] = []

    for lead in leads:
        stage_counts[raw_stage(lead)] += 1
        reasons = exclusion_reasons(lead)
        if reasons:
            reason_counts.update(reasons)
            excluded.append({
                "id": _get(lead, "id"),
                "full_name": _get(lead, "full_name"),
                "stage": raw_stage(lead),
                "status": _get(lead, "status"),
                "reasons": reasons,
            })

    visible = len(leads) - len(excluded)
    logger.debug(f"Funnel analysis: {len(leads)} leads, {visible} visible, {len(excluded)} excluded")

    return {
        "total_leads": len(leads),
        "visible_leads": visible,
        "excluded_leads": len(excluded),
        "stage_counts": dict(stage_counts),
        "exclusion_reasons": dict(reason_counts),
        "excluded": excluded,
    }
