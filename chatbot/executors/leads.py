"""
Lead qualification node.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from app.services.lead_service import LeadNotFoundError, lead_service

from chatbot.conversation.context import ConversationContext
from chatbot.conversation.flow_graph import NodeType
from .base import NodeResult, executor_registry

logger = logging.getLogger(__name__)

AFFIRMATIVE_ANSWERS = {"yes", "si", "sí", "true", "1"}

DEFAULT_HIGH_THRESHOLD = 70
DEFAULT_MEDIUM_THRESHOLD = 40

DEFAULT_LEVEL_STAGES = {
    "high": "opportunity",
    "medium": "qualification",
    "low": "prospecting",
}


def is_affirmative(answer: Any) -> bool:
    if isinstance(answer, dict):
        answer = answer.get("value")
    if isinstance(answer, bool):
        return answer
    if answer is None:
        return False
    return str(answer).strip().lower() in AFFIRMATIVE_ANSWERS


def score_answers(questions: List[Dict[str, Any]], answers: Dict[str, Any]) -> int:
    """Weighted share of affirmative answers, 0..100."""
    total = 0.0
    earned = 0.0
    for question in questions:
        weight = float(question.get("weight", 1) or 0)
        total += weight
        if is_affirmative(answers.get(question.get("id"))):
            earned += weight
    if total <= 0:
        return 0
    return round(earned * 100 / total)


def qualification_level(score: int, node_data: Dict[str, Any]) -> str:
    high = float(node_data.get("high_score_threshold", DEFAULT_HIGH_THRESHOLD))
    medium = float(node_data.get("medium_score_threshold", DEFAULT_MEDIUM_THRESHOLD))
    if score >= high:
        return "high"
    if score >= medium:
        return "medium"
    return "low"


@executor_registry.register(NodeType.LEAD_QUALIFICATION.value, "qualification", "qualify_lead")
async def lead_qualification(
    tenant_id: str,
    context: ConversationContext,
    node_data: Dict[str, Any],
    db: Session
) -> NodeResult:
    """
    Score the collected answers and move the lead to the matching stage.

    Handles: ``high``, ``medium``, ``low``. Without a lead in the context the
    node answers ``low`` and changes nothing.
    """
    ctx = context.copy()
    if not ctx.lead_id:
        logger.warning(f"Lead qualification skipped for tenant {tenant_id}: no lead in context")
        return NodeResult("low", ctx, metadata={"reason": "missing_lead"})

    questions = node_data.get("questions") or []
    score = score_answers(questions, ctx.answers)
    level = qualification_level(score, node_data)
    stage = node_data.get(f"{level}_stage") or DEFAULT_LEVEL_STAGES[level]

    try:
        lead = lead_service.get_lead(db, tenant_id, ctx.lead_id)
    except LeadNotFoundError:
        logger.warning(f"Lead {ctx.lead_id} not found during qualification")
        return NodeResult("low", ctx, metadata={"reason": "lead_not_found"})

    lead = lead_service.update_stage(
        db,
        tenant_id,
        lead.id,
        stage,
        expected_version=lead.version,
        reason=f"qualification_{level}",
        commit=False,
    )
    lead_service.update_metadata(
        db,
        lead,
        {
            "qualification_score": score,
            "qualification_level": level,
            "qualified_at": datetime.now(timezone.utc).isoformat(),
        },
        commit=False,
    )

    ctx.update({"lead_score": score, "qualification_level": level, "lead_stage": stage})
    message_template = node_data.get(f"{level}_message") or node_data.get("message")
    message = ctx.render(message_template) if message_template else None

    logger.info(f"Lead {lead.id} scored {score} ({level}), stage {stage}")
    return NodeResult(level, ctx, message, metadata={"score": score, "stage": stage})
