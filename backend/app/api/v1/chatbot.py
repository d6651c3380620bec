"""
Chatbot API Endpoints

Message routing through the flow engine, conversation sessions, flow
templates and their per-channel activations. Every route requires the
``chatbot`` plan module.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from chatbot.conversation.context import ConversationContext
from chatbot.conversation.flow_engine import flow_engine
from chatbot.conversation.flow_graph import FlowDefinitionError, FlowNode, FlowTemplate, NodeType
from chatbot.conversation.state_manager import SessionStatus, state_manager
from chatbot.decision_engine import greeting_matcher

from ...core.config import settings
from ...core.database import get_db
from ...services.plan_service import plan_service, PlanAccessError
from ...services.template_service import template_service, TemplateNotFoundError
from ..deps import plan_limit_exception, require_module
from ..responses import success_response

logger = logging.getLogger(__name__)

MODULE_CODE = "chatbot"
WELCOME_MARKERS = ("welcome", "bienvenida")
DEFAULT_GREETING = "👋 Hola, soy el asistente virtual. ¿En qué puedo ayudarte hoy?"
GENERIC_REPLY = "Disculpa, ¿podrías decirme en qué estás interesado o cómo puedo ayudarte?"

router = APIRouter(prefix="/chatbot", tags=["Chatbot"])
chatbot_tenant = require_module(MODULE_CODE)


# Pydantic schemas
class IntegratedMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)
    user_id: Optional[str] = Field(None, max_length=255)
    session_id: Optional[str] = Field(None, max_length=255)
    channel_type: Optional[str] = Field(None, max_length=30)
    user_name: Optional[str] = Field(None, max_length=255)


class SimpleMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)
    session_id: Optional[str] = None
    template_id: Optional[str] = None
    channel_type: Optional[str] = Field(None, max_length=30)


class EndSessionRequest(BaseModel):
    status: str = Field(default="completed", pattern="^(completed|transferred|failed)$")
    reason: Optional[str] = None


class TemplateDocument(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: str = Field(default="draft", pattern="^(draft|published|archived)$")
    nodes: List[Dict[str, Any]] = Field(..., min_length=1)
    edges: List[Dict[str, Any]] = Field(default_factory=list)


class TemplateSummary(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    status: str
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TemplateResponse(TemplateSummary):
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]]


class ActivationCreateRequest(BaseModel):
    template_id: str
    channel_type: str = Field(default="web", min_length=1, max_length=30)
    config: Optional[Dict[str, Any]] = None


class ActivationUpdateRequest(BaseModel):
    is_active: bool


class ActivationResponse(BaseModel):
    id: str
    template_id: str
    channel_type: str
    is_active: bool
    config: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Stateless routing helpers
def is_new_conversation(session_id: Optional[str]) -> bool:
    """Client-generated placeholders (``new_...`` or ids without dashes) start a conversation."""
    return not session_id or session_id.startswith("new_") or "-" not in session_id


def find_welcome_node(flow: FlowTemplate) -> Optional[FlowNode]:
    """
    The node greeting the user: one whose id or label mentions welcome/bienvenida,
    otherwise the first message node reachable from start.
    """
    for node in flow.nodes.values():
        haystack = f"{node.id} {node.label}".lower()
        if any(marker in haystack for marker in WELCOME_MARKERS):
            return node

    start = flow.start_node()
    node_id = flow.next_node_id(start.id) if start else None
    seen = set()
    while node_id and node_id not in seen:
        seen.add(node_id)
        node = flow.get_node(node_id)
        if node is None:
            break
        if node.type in (NodeType.MESSAGE, NodeType.TEXT):
            return node
        node_id = flow.next_node_id(node_id)
    return None


def simple_reply(flow: Optional[FlowTemplate], text: str, is_new: bool) -> List[str]:
    context = ConversationContext()
    responses: List[str] = []

    if flow is not None and (is_new or greeting_matcher.is_greeting(text)):
        welcome = find_welcome_node(flow)
        if welcome is not None:
            message = welcome.data.get("message") or welcome.data.get("messageText") or welcome.data.get("text")
            if message:
                responses.append(context.render(message))

    if flow is not None and not responses and not is_new:
        for node in flow.find_nodes(NodeType.INPUT):
            question = node.data.get("question") or node.data.get("prompt")
            if question:
                responses.append(context.render(question))
                break

    if not responses:
        responses.append(DEFAULT_GREETING if is_new else GENERIC_REPLY)
    return responses


def _template_not_found(exc: TemplateNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _invalid_flow(exc: FlowDefinitionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "invalid_flow", "message": str(exc)}
    )


# Messages
@router.post("/integrated-message")
async def integrated_message(
    request: IntegratedMessageRequest,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    """Run one conversation turn through the flow engine."""
    user_channel_id = request.user_id
    if not user_channel_id and request.session_id:
        session = state_manager.get_session(db, request.session_id, tenant_id)
        if session is not None:
            user_channel_id = session.user_channel_id
    if not user_channel_id:
        user_channel_id = f"user-{uuid.uuid4().hex[:9]}"

    result = await flow_engine.process_message(
        db,
        tenant_id,
        user_channel_id,
        request.text,
        channel_type=request.channel_type,
        user_name=request.user_name,
    )

    data = result.to_dict()
    data["user_id"] = user_channel_id
    return success_response(data)


@router.post("/simple-message")
async def simple_message(
    request: SimpleMessageRequest,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    """Keyword reply from the active template without touching conversation state."""
    is_new = is_new_conversation(request.session_id)
    flow = None
    try:
        if request.template_id:
            flow = template_service.load_flow(db, tenant_id, request.template_id)
        else:
            active = template_service.get_active_template(
                db, tenant_id, request.channel_type or settings.DEFAULT_CHANNEL_TYPE
            )
            flow = active[1] if active else None
    except (TemplateNotFoundError, FlowDefinitionError) as e:
        logger.warning(f"Simple message for tenant {tenant_id} without usable template: {e}")

    responses = simple_reply(flow, request.text, is_new)
    return success_response({
        "response": "\n\n".join(responses),
        "messages": responses,
        "is_multi_message": len(responses) > 1,
        "metadata": {
            "source": "simplified_processing",
            "is_new_conversation": is_new,
            "template_id": flow.id if flow else None,
        },
    })


# Sessions
@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    flow_status = flow_engine.get_flow_status(db, session_id, tenant_id)
    if flow_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {session_id} not found")
    return success_response(flow_status)


@router.post("/sessions/{session_id}/end")
async def end_session(
    session_id: str,
    request: EndSessionRequest,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    session = state_manager.get_session(db, session_id, tenant_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {session_id} not found")

    state_manager.end_session(db, session, SessionStatus(request.status), reason=request.reason)
    db.commit()
    return success_response({"session_id": session.id, "status": session.status})


@router.get("/statistics")
async def get_statistics(
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    return success_response(state_manager.get_session_statistics(db, tenant_id))


# Templates
@router.get("/templates")
async def list_templates(
    template_status: Optional[str] = Query(None, alias="status", description="draft, published or archived"),
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    templates = template_service.list_templates(db, tenant_id, template_status)
    return success_response([TemplateSummary.model_validate(t) for t in templates])


@router.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(
    request: TemplateDocument,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    try:
        plan_service.enforce_limit(
            db, tenant_id, MODULE_CODE, "max_templates", template_service.count_templates(db, tenant_id)
        )
    except PlanAccessError as e:
        raise plan_limit_exception(e)

    try:
        template = template_service.create_template(db, tenant_id, request.model_dump())
    except FlowDefinitionError as e:
        raise _invalid_flow(e)
    return success_response(TemplateResponse.model_validate(template))


@router.get("/templates/{template_id}")
async def get_template(
    template_id: str,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    try:
        template = template_service.get_template(db, tenant_id, template_id)
    except TemplateNotFoundError as e:
        raise _template_not_found(e)
    return success_response(TemplateResponse.model_validate(template))


@router.put("/templates/{template_id}")
async def replace_template(
    template_id: str,
    request: TemplateDocument,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    """Replace the whole flow document; the version is bumped."""
    try:
        template = template_service.replace_template(db, tenant_id, template_id, request.model_dump())
    except TemplateNotFoundError as e:
        raise _template_not_found(e)
    except FlowDefinitionError as e:
        raise _invalid_flow(e)
    return success_response(TemplateResponse.model_validate(template))


@router.delete("/templates/{template_id}")
async def archive_template(
    template_id: str,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    try:
        template = template_service.archive_template(db, tenant_id, template_id)
    except TemplateNotFoundError as e:
        raise _template_not_found(e)
    return success_response({"id": template.id, "status": template.status})


@router.post("/templates/{template_id}/invalidate-cache")
async def invalidate_template_cache(
    template_id: str,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    try:
        template_service.get_template(db, tenant_id, template_id)
    except TemplateNotFoundError as e:
        raise _template_not_found(e)
    removed = template_service.invalidate_cache(tenant_id, template_id)
    return success_response({"template_id": template_id, "invalidated": removed})


# Activations
@router.get("/activations")
async def list_activations(
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    activations = template_service.list_activations(db, tenant_id)
    return success_response([ActivationResponse.model_validate(a) for a in activations])


@router.post("/activations", status_code=status.HTTP_201_CREATED)
async def create_activation(
    request: ActivationCreateRequest,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    """Activate a template on a channel; the channel's previous activation is switched off."""
    try:
        template = template_service.get_template(db, tenant_id, request.template_id)
        if template.status == "archived":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Template {template.id} is archived"
            )
        activation = template_service.create_activation(
            db, tenant_id, request.template_id, request.channel_type, request.config
        )
    except TemplateNotFoundError as e:
        raise _template_not_found(e)
    return success_response(ActivationResponse.model_validate(activation))


@router.patch("/activations/{activation_id}")
async def update_activation(
    activation_id: str,
    request: ActivationUpdateRequest,
    tenant_id: str = Depends(chatbot_tenant),
    db: Session = Depends(get_db)
):
    try:
        activation = template_service.set_activation_state(db, tenant_id, activation_id, request.is_active)
    except TemplateNotFoundError as e:
        raise _template_not_found(e)
    return success_response(ActivationResponse.model_validate(activation))
