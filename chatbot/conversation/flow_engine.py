"""
Flow engine: executes a chatbot template's node graph one conversation turn at a time.

A turn starts from the session's persisted execution pointer, applies the
user's reply to the node the session was waiting on, then walks the graph
until a node waits for input, the flow ends, or a step/loop limit is hit.
Everything the turn writes (session, messages, transitions, lead and
appointment changes) commits in one transaction; agent notifications are
dispatched after that commit.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.chatbot import ConversationSession
from app.services.lead_service import lead_service
from app.services.notification_service import NotificationService, notification_service
from app.services.template_service import TemplateNotFoundError, template_service
from app.services.webhook_service import WebhookError, WebhookService

from chatbot.decision_engine.keyword_matcher import match_route, normalize_text
from chatbot.executors import NodeExecutionError, NodeResult, ExecutorRegistry, executor_registry
from chatbot.llm.llm_service import LLMService, LLMServiceError, llm_service

from .conditions import condition_handle
from .context import ConversationContext
from .flow_graph import FlowNode, FlowTemplate, NodeType
from .input_validation import parse_input_type, retry_message, validate_input
from .state_manager import ConversationStateManager, SessionStatus, state_manager

logger = logging.getLogger(__name__)

# Internal handles that stop the run loop instead of following an edge
END_HANDLE = "__end__"
TRANSFER_HANDLE = "__transfer__"
FAILED_HANDLE = "__failed__"

DEFAULT_END_MESSAGE = "Gracias por contactarnos. ¡Hasta pronto!"
DEFAULT_TRANSFER_MESSAGE = "Te comunicaremos con un asesor en breve."
DEFAULT_AI_FALLBACK = "En este momento no puedo responder, un asesor te contactará pronto."
DEFAULT_OPTIONS_RETRY = "Por favor elige una de las opciones:"
NO_ACTIVE_FLOW_MESSAGE = "Por el momento no hay un asistente disponible en este canal."
LOOP_MESSAGE = "Lo siento, no pude continuar con la conversación. Un asesor te contactará."

CORE_NODE_TYPES = [
    NodeType.START, NodeType.MESSAGE, NodeType.TEXT, NodeType.INPUT, NodeType.BUTTONS,
    NodeType.LIST, NodeType.CONDITION, NodeType.CONDITIONAL, NodeType.AI, NodeType.AI_RESPONSE,
    NodeType.ACTION, NodeType.ROUTER, NodeType.END,
]


@dataclass
class TurnResult:
    """Everything the channel needs to render the bot's reply for one turn."""
    session_id: Optional[str]
    messages: List[str] = field(default_factory=list)
    buttons: List[Dict[str, Any]] = field(default_factory=list)
    list_items: List[Dict[str, Any]] = field(default_factory=list)
    status: str = SessionStatus.ACTIVE.value
    waiting_for: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return "\n\n".join(self.messages)

    @property
    def is_multi_message(self) -> bool:
        return len(self.messages) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message": self.message,
            "messages": self.messages,
            "buttons": self.buttons,
            "list_items": self.list_items,
            "status": self.status,
            "waiting_for": self.waiting_for,
            "is_multi_message": self.is_multi_message,
            "metadata": self.metadata,
        }


@dataclass
class _ReplyOutcome:
    """How a reply to a waiting node moves the flow.

    ``handle`` follows an edge, ``rerun`` executes the waiting node again and
    neither means the node keeps waiting.
    """
    handle: Optional[str] = None
    rerun: bool = False


class _Turn:
    """Mutable state accumulated while one turn runs."""

    def __init__(self, context: ConversationContext):
        self.context = context
        self.outputs: List[Tuple[Optional[str], str]] = []
        self.buttons: List[Dict[str, Any]] = []
        self.list_items: List[Dict[str, Any]] = []
        self.media: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []
        self.visited: List[str] = []
        self.error: Optional[str] = None

    def say(self, node_id: Optional[str], message: Optional[str]) -> None:
        if message:
            self.outputs.append((node_id, message))

    def absorb(self, node: FlowNode, result: NodeResult) -> None:
        self.context = result.context
        self.say(node.id, result.message)
        if result.metadata.get("buttons"):
            self.buttons = result.metadata["buttons"]
        if result.metadata.get("list_items"):
            self.list_items = result.metadata["list_items"]
        self.media.extend(result.metadata.get("media") or [])
        self.notifications.extend(result.notifications)


def normalize_options(raw_options: Any) -> List[Dict[str, Any]]:
    """Buttons and list items as ``{id, text, value, description}`` dicts."""
    options = []
    for index, raw in enumerate(raw_options or []):
        if isinstance(raw, dict):
            text = raw.get("text") or raw.get("label") or raw.get("title") or raw.get("value") or ""
            options.append({
                "id": raw.get("id") or f"option-{index}",
                "text": str(text),
                "value": raw.get("value") if raw.get("value") is not None else text,
                "description": raw.get("description"),
            })
        else:
            options.append({"id": f"option-{index}", "text": str(raw), "value": raw, "description": None})
    return options


def node_options(node: FlowNode) -> List[Dict[str, Any]]:
    data = node.data
    if node.type == NodeType.LIST:
        raw = data.get("items") or data.get("options") or []
        if not raw and data.get("sections"):
            raw = [row for section in data["sections"] for row in section.get("rows") or section.get("items") or []]
        return normalize_options(raw)
    return normalize_options(data.get("buttons") or data.get("options"))


def match_option(reply: str, options: List[Dict[str, Any]]) -> Optional[Tuple[int, Dict[str, Any]]]:
    """Match a reply by 1-based position, option text or option value."""
    stripped = (reply or "").strip()
    if stripped.isdigit():
        position = int(stripped)
        if 1 <= position <= len(options):
            return position - 1, options[position - 1]

    normalized = normalize_text(stripped)
    if not normalized:
        return None
    for index, option in enumerate(options):
        if normalize_text(option["text"]) == normalized:
            return index, option
    for index, option in enumerate(options):
        if option["value"] is not None and normalize_text(str(option["value"])) == normalized:
            return index, option
    return None


def _node_text(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        if data.get(key):
            return data[key]
    return None


def _variable_name(data: Dict[str, Any]) -> Optional[str]:
    return data.get("variableName") or data.get("variable_name") or data.get("variable")


ActionHandler = Callable[
    [Session, str, ConversationSession, FlowNode, ConversationContext, NodeResult],
    Awaitable[str]
]


class FlowEngine:
    """Executes chatbot flows against persisted conversation sessions."""

    def __init__(
        self,
        states: Optional[ConversationStateManager] = None,
        registry: Optional[ExecutorRegistry] = None,
        llm: Optional[LLMService] = None,
        notifications: Optional[NotificationService] = None,
        max_steps: Optional[int] = None,
        max_node_visits: Optional[int] = None
    ):
        self.states = states or state_manager
        self.registry = registry or executor_registry
        self.llm = llm or llm_service
        self.notifications = notifications or notification_service
        self.max_steps = max_steps or settings.FLOW_MAX_EXECUTION_STEPS
        self.max_node_visits = max_node_visits or settings.FLOW_MAX_NODE_VISITS

        self.core_handlers = {
            NodeType.START: self._handle_start,
            NodeType.MESSAGE: self._handle_message,
            NodeType.TEXT: self._handle_message,
            NodeType.INPUT: self._handle_input,
            NodeType.BUTTONS: self._handle_options,
            NodeType.LIST: self._handle_options,
            NodeType.CONDITION: self._handle_condition,
            NodeType.CONDITIONAL: self._handle_condition,
            NodeType.AI: self._handle_ai,
            NodeType.AI_RESPONSE: self._handle_ai,
            NodeType.ACTION: self._handle_action,
            NodeType.ROUTER: self._handle_router,
            NodeType.END: self._handle_end,
        }
        self.action_handlers: Dict[str, ActionHandler] = {
            "set_variable": self._action_set_variable,
            "webhook": self._action_webhook,
            "update_lead_stage": self._action_update_lead_stage,
            "capture_lead": self._action_capture_lead,
            "notify_agent": self._action_notify_agent,
            "transfer": self._action_transfer,
        }
        self.stats = {"turns": 0, "executor_errors": 0, "loops_stopped": 0, "max_steps_exceeded": 0}

    def register_action_handler(self, action_type: str, handler: ActionHandler) -> None:
        self.action_handlers[action_type] = handler

    # -- turn processing ------------------------------------------------

    async def process_message(
        self,
        db: Session,
        tenant_id: str,
        user_channel_id: str,
        text: str,
        channel_type: Optional[str] = None,
        user_name: Optional[str] = None
    ) -> TurnResult:
        """
        Process one user message.

        Args:
            db: Database session; the turn commits on it
            tenant_id: Tenant owning the chatbot
            user_channel_id: User identifier on the channel (phone, web visitor id, ...)
            text: The user's message
            channel_type: Channel the message arrived on
            user_name: Display name, stored as ``user_name`` in the context

        Returns:
            TurnResult with the bot messages, options and resulting session status
        """
        start_time = time.time()
        channel_type = channel_type or settings.DEFAULT_CHANNEL_TYPE
        self.stats["turns"] += 1

        session, flow, is_new = self._resolve_session(db, tenant_id, user_channel_id, channel_type)
        if session is None:
            db.commit()
            return TurnResult(
                session_id=None,
                messages=[NO_ACTIVE_FLOW_MESSAGE],
                status="no_active_flow",
                metadata={"channel_type": channel_type},
            )

        context = ConversationContext.from_dict(session.state_data)
        context.reset_visits()
        context.set("last_user_message", text)
        if user_name:
            context.set("user_name", user_name)

        self.states.add_message(db, session, "user", text, node_id=session.current_node_id)
        turn = _Turn(context)

        status, pointer = await self._advance(db, tenant_id, session, flow, turn, text, is_new)

        self.states.save_state(db, session, turn.context.to_dict(), pointer, status)
        for node_id, message in turn.outputs:
            self.states.add_message(db, session, "bot", message, node_id=node_id)
        db.commit()

        delivery = None
        if turn.notifications:
            delivery = await self.notifications.dispatch(turn.notifications)

        metadata: Dict[str, Any] = {
            "template_id": flow.id,
            "template_version": flow.version,
            "current_node_id": pointer,
            "visited_nodes": turn.visited,
            "is_new_session": is_new,
            "processing_time_ms": round((time.time() - start_time) * 1000, 2),
        }
        if turn.media:
            metadata["media"] = turn.media
        if turn.error:
            metadata["error"] = turn.error
        if delivery is not None:
            metadata["notifications"] = delivery

        return TurnResult(
            session_id=session.id,
            messages=[message for _, message in turn.outputs],
            buttons=turn.buttons,
            list_items=turn.list_items,
            status=status,
            waiting_for=turn.context.waiting_for,
            metadata=metadata,
        )

    def _resolve_session(
        self,
        db: Session,
        tenant_id: str,
        user_channel_id: str,
        channel_type: str
    ) -> Tuple[Optional[ConversationSession], Optional[FlowTemplate], bool]:
        session = self.states.find_active_session(db, tenant_id, user_channel_id, channel_type)
        if session is not None and self.states.is_idle(session):
            logger.info(f"Session {session.id} idle beyond timeout, expiring")
            self.states.end_session(db, session, SessionStatus.EXPIRED, reason="idle_timeout")
            session = None

        if session is not None:
            try:
                return session, template_service.load_flow(db, tenant_id, session.template_id), False
            except TemplateNotFoundError:
                logger.warning(f"Template {session.template_id} of session {session.id} is gone")
                self.states.end_session(db, session, SessionStatus.FAILED, reason="template_missing")

        started = self.states.start_session(db, tenant_id, user_channel_id, channel_type)
        if started is None:
            return None, None, False
        return started[0], started[1], True

    async def _advance(
        self,
        db: Session,
        tenant_id: str,
        session: ConversationSession,
        flow: FlowTemplate,
        turn: _Turn,
        text: str,
        is_new: bool
    ) -> Tuple[str, Optional[str]]:
        """Apply the reply to the waiting node (if any) and run the graph."""
        waiting = turn.context.waiting_for
        start_node = flow.start_node()

        if is_new or not waiting:
            node_id = session.current_node_id or (start_node.id if start_node else None)
            return await self._run(db, tenant_id, session, flow, turn, node_id)

        waiting_node = flow.get_node(waiting.get("node_id")) or flow.get_node(session.current_node_id)
        if waiting_node is None:
            logger.warning(f"Waiting node {waiting.get('node_id')} not in template {flow.id}, restarting")
            turn.context.set_waiting_for(None)
            return await self._run(db, tenant_id, session, flow, turn, start_node.id if start_node else None)

        outcome = self._apply_reply(waiting_node, flow, text, turn)
        if outcome.rerun:
            turn.context.set_waiting_for(None)
            return await self._run(db, tenant_id, session, flow, turn, waiting_node.id)
        if outcome.handle is None:
            return SessionStatus.WAITING_INPUT.value, waiting_node.id

        turn.context.set_waiting_for(None)
        next_id = flow.next_node_id(waiting_node.id, outcome.handle)
        if next_id is None:
            return SessionStatus.COMPLETED.value, None
        return await self._run(
            db, tenant_id, session, flow, turn, next_id,
            from_node_id=waiting_node.id, handle=outcome.handle,
        )

    async def _run(
        self,
        db: Session,
        tenant_id: str,
        session: ConversationSession,
        flow: FlowTemplate,
        turn: _Turn,
        node_id: Optional[str],
        from_node_id: Optional[str] = None,
        handle: Optional[str] = None
    ) -> Tuple[str, Optional[str]]:
        """Walk the graph from ``node_id``; returns (session status, execution pointer)."""
        steps = 0
        current_id = node_id

        while current_id:
            node = flow.get_node(current_id)
            if node is None:
                logger.warning(f"Edge to unknown node {current_id} in template {flow.id}")
                return SessionStatus.COMPLETED.value, None

            steps += 1
            if steps > self.max_steps:
                self.stats["max_steps_exceeded"] += 1
                logger.warning(f"max_steps_exceeded in session {session.id} at node {current_id}")
                turn.error = "max_steps_exceeded"
                turn.say(None, settings.FALLBACK_ERROR_MESSAGE)
                return SessionStatus.ACTIVE.value, current_id

            if turn.context.register_visit(current_id) > self.max_node_visits:
                self.stats["loops_stopped"] += 1
                logger.warning(f"Loop detected in session {session.id}: node {current_id} visited too often")
                turn.error = "loop_detected"
                turn.say(None, LOOP_MESSAGE)
                return SessionStatus.FAILED.value, current_id

            self.states.log_transition(db, session, from_node_id, current_id, handle)
            logger.info(f"Session {session.id}: {from_node_id or '-'} --{handle or 'start'}--> {current_id}")
            turn.visited.append(current_id)

            result = await self._execute_node(db, tenant_id, session, flow, node, turn.context)
            turn.absorb(node, result)

            if result.handle is None or self._waits_for_reason(flow, node, result):
                waiting_kind = "cancellation_reason" if result.handle == "needReason" else node.raw_type
                turn.context.set_waiting_for({"node_id": node.id, "type": waiting_kind})
                return SessionStatus.WAITING_INPUT.value, node.id
            if result.handle == END_HANDLE:
                return SessionStatus.COMPLETED.value, None
            if result.handle == TRANSFER_HANDLE:
                return SessionStatus.TRANSFERRED.value, None
            if result.handle == FAILED_HANDLE:
                return SessionStatus.FAILED.value, node.id

            from_node_id, handle = node.id, result.handle
            current_id = flow.next_node_id(node.id, result.handle)

        return SessionStatus.COMPLETED.value, None

    @staticmethod
    def _waits_for_reason(flow: FlowTemplate, node: FlowNode, result: NodeResult) -> bool:
        return result.handle == "needReason" and "needReason" not in flow.outgoing_handles(node.id)

    async def _execute_node(
        self,
        db: Session,
        tenant_id: str,
        session: ConversationSession,
        flow: FlowTemplate,
        node: FlowNode,
        context: ConversationContext
    ) -> NodeResult:
        """Run one node inside a savepoint; failures roll back and take the error branch."""
        savepoint = db.begin_nested()
        try:
            result = await self._dispatch(db, tenant_id, session, flow, node, context.copy())
            savepoint.commit()
            return result
        except Exception as e:
            savepoint.rollback()
            self.stats["executor_errors"] += 1
            logger.error(f"Node {node.id} ({node.raw_type}) failed in session {session.id}: {e}", exc_info=True)

            outgoing = flow.outgoing_handles(node.id)
            message = node.data.get("error_message") or settings.FALLBACK_ERROR_MESSAGE
            for error_handle in ("error", "failure"):
                if error_handle in outgoing:
                    return NodeResult(error_handle, context, message, metadata={"error": str(e)})
            return NodeResult(FAILED_HANDLE, context, message, metadata={"error": str(e)})

    async def _dispatch(
        self,
        db: Session,
        tenant_id: str,
        session: ConversationSession,
        flow: FlowTemplate,
        node: FlowNode,
        context: ConversationContext
    ) -> NodeResult:
        handler = self.core_handlers.get(node.type)
        if handler is not None:
            return await handler(db, tenant_id, session, flow, node, context)

        executor = self.registry.get(node.raw_type) or (self.registry.get(node.type.value) if node.type else None)
        if executor is not None:
            return await executor(tenant_id, context, dict(node.data), db)

        logger.warning(f"No handler for node type '{node.raw_type}' (node {node.id}), continuing")
        return NodeResult("next", context, context.render(node.data.get("message")) or None)

    # -- replies to waiting nodes ---------------------------------------

    def _apply_reply(self, node: FlowNode, flow: FlowTemplate, text: str, turn: _Turn) -> _ReplyOutcome:
        context = turn.context
        waiting = context.waiting_for or {}

        if waiting.get("type") == "cancellation_reason":
            context.set("cancellation_reason", text.strip())
            return _ReplyOutcome(rerun=True)

        if node.type == NodeType.INPUT:
            return self._apply_input_reply(node, flow, text, turn)
        if node.type in (NodeType.BUTTONS, NodeType.LIST):
            return self._apply_option_reply(node, flow, text, turn)

        variable = _variable_name(node.data)
        if variable:
            context.set(variable, text.strip())
        return _ReplyOutcome(handle="next")

    def _apply_input_reply(self, node: FlowNode, flow: FlowTemplate, text: str, turn: _Turn) -> _ReplyOutcome:
        context = turn.context
        data = node.data
        input_type = parse_input_type(data.get("input_type") or data.get("inputType"))
        variable = _variable_name(data) or node.id

        valid, value = validate_input(text, input_type, data.get("validation_pattern"))
        if valid:
            context.clear_input_retries(node.id)
            self._store_answer(context, variable, value)
            return _ReplyOutcome(handle="next")

        retries = context.increment_input_retry(node.id)
        if retries >= settings.INPUT_MAX_RETRIES:
            context.clear_input_retries(node.id)
            if "invalid" in flow.outgoing_handles(node.id):
                return _ReplyOutcome(handle="invalid")
            logger.info(f"Input node {node.id} accepted raw value after {retries} invalid replies")
            self._store_answer(context, variable, text.strip())
            return _ReplyOutcome(handle="next")

        turn.say(node.id, context.render(data.get("retry_message") or retry_message(input_type)))
        return _ReplyOutcome()

    def _apply_option_reply(self, node: FlowNode, flow: FlowTemplate, text: str, turn: _Turn) -> _ReplyOutcome:
        context = turn.context
        options = node_options(node)
        match = match_option(text, options)

        if match is None:
            turn.say(node.id, context.render(node.data.get("retry_message") or DEFAULT_OPTIONS_RETRY))
            if node.type == NodeType.LIST:
                turn.list_items = options
            else:
                turn.buttons = options
            return _ReplyOutcome()

        index, option = match
        variable = _variable_name(node.data) or "selected_option"
        context.set(variable, option["value"])
        context.set(f"{variable}_text", option["text"])
        return _ReplyOutcome(handle=self._option_handle(flow, node, index, option))

    @staticmethod
    def _option_handle(flow: FlowTemplate, node: FlowNode, index: int, option: Dict[str, Any]) -> str:
        wired = flow.outgoing_handles(node.id)
        for candidate in (option.get("value"), option.get("id"), f"option-{index}"):
            if candidate is not None and str(candidate) in wired:
                return str(candidate)
        return "next"

    @staticmethod
    def _store_answer(context: ConversationContext, variable: str, value: Any) -> None:
        context.set(variable, value)
        answers = dict(context.answers)
        answers[variable] = value
        context.set("answers", answers)

    # -- core node handlers ---------------------------------------------

    async def _handle_start(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        return NodeResult("next", context, context.render(node.data.get("message")) or None)

    async def _handle_message(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        message = context.render(_node_text(node.data, "message", "text", "content"))
        if node.data.get("waitForResponse") or node.data.get("wait_for_response"):
            return NodeResult(None, context, message or None)
        return NodeResult("next", context, message or None)

    async def _handle_input(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        prompt = context.render(_node_text(node.data, "question", "prompt", "message"))
        input_type = parse_input_type(node.data.get("input_type") or node.data.get("inputType"))
        return NodeResult(None, context, prompt or None, metadata={"input_type": input_type.value})

    async def _handle_options(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        options = node_options(node)
        key = "list_items" if node.type == NodeType.LIST else "buttons"
        message = context.render(_node_text(node.data, "message", "text", "question"))
        return NodeResult(None, context, message or None, metadata={key: options})

    async def _handle_condition(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        handle = condition_handle(node.data, context)
        outgoing = flow.outgoing_handles(node.id)
        if handle not in outgoing:
            alias = "true" if handle == "yes" else "false"
            if alias in outgoing:
                handle = alias
        return NodeResult(handle, context)

    async def _handle_ai(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        data = node.data
        prompt = context.render(data.get("prompt") or "{{last_user_message}}")
        system_prompt = context.render(data.get("system_prompt") or data.get("systemPrompt")) or None
        output_variable = data.get("output_variable") or "ai_response"
        emit = data.get("emit_response", True)

        history = None
        if data.get("include_history"):
            history = [
                {"role": "assistant" if m.role == "bot" else "user", "content": m.content}
                for m in self.states.get_messages(db, session.id, limit=settings.CONVERSATION_HISTORY_LIMIT)
                if m.role in ("user", "bot")
            ]

        try:
            reply = await self.llm.generate_response(
                prompt,
                system_prompt=system_prompt,
                temperature=data.get("temperature"),
                max_tokens=data.get("max_tokens"),
                history=history,
            )
        except LLMServiceError as e:
            logger.warning(f"AI node {node.id} fell back after LLM failure: {e}")
            fallback = context.render(data.get("fallback_message") or DEFAULT_AI_FALLBACK)
            context.set(output_variable, fallback)
            handle = "error" if "error" in flow.outgoing_handles(node.id) else "next"
            return NodeResult(handle, context, fallback, metadata={"llm_error": str(e)})

        context.set(output_variable, reply)
        return NodeResult("next", context, reply if emit else None)

    async def _handle_action(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        action_type = node.data.get("action_type") or node.data.get("actionType")
        result = NodeResult("next", context)

        handler = self.action_handlers.get(action_type)
        if handler is None:
            logger.warning(f"Unknown action type '{action_type}' on node {node.id}")
        else:
            result.handle = await handler(db, tenant_id, session, node, context, result)

        if result.message is None and node.data.get("message"):
            result.message = context.render(node.data["message"])
        return result

    async def _handle_router(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        handle = match_route(context.last_user_message, node.data.get("routes") or [], default="next")
        context.set("matched_route", handle)
        return NodeResult(handle, context)

    async def _handle_end(self, db, tenant_id, session, flow, node, context) -> NodeResult:
        message = context.render(_node_text(node.data, "message", "text") or DEFAULT_END_MESSAGE)
        return NodeResult(END_HANDLE, context, message)

    # -- actions --------------------------------------------------------

    async def _action_set_variable(self, db, tenant_id, session, node, context, result) -> str:
        variables = dict(node.data.get("variables") or {})
        name = _variable_name(node.data)
        if name:
            variables[name] = node.data.get("value")
        for key, value in variables.items():
            context.set(key, context.render(value) if isinstance(value, str) else value)
        return "next"

    async def _action_webhook(self, db, tenant_id, session, node, context, result) -> str:
        data = node.data
        url = context.render(data.get("url"))
        if not url:
            raise NodeExecutionError(f"Webhook action on node {node.id} has no url")

        payload = self._render_value(data.get("payload"), context) if data.get("payload") else {
            "tenant_id": tenant_id,
            "session_id": session.id,
            "variables": context.public_variables(),
        }
        try:
            async with WebhookService() as webhooks:
                response = await webhooks.send(
                    data.get("method") or "POST",
                    url,
                    payload,
                    headers=self._render_value(data.get("headers") or {}, context),
                )
        except WebhookError as e:
            raise NodeExecutionError(f"Webhook {url} failed: {e}") from e

        context.set(data.get("response_variable") or "webhook_response", response)
        return "next"

    async def _action_update_lead_stage(self, db, tenant_id, session, node, context, result) -> str:
        stage = node.data.get("stage") or node.data.get("lead_stage")
        if not context.lead_id or not stage:
            logger.warning(f"update_lead_stage on node {node.id} skipped: lead or stage missing")
            return "next"
        lead = lead_service.update_stage(db, tenant_id, context.lead_id, stage, reason="chatbot_action", commit=False)
        context.set("lead_stage", lead.stage)
        return "next"

    async def _action_capture_lead(self, db, tenant_id, session, node, context, result) -> str:
        lead = lead_service.find_or_create_from_contact(
            db,
            tenant_id,
            full_name=context.get("customer_name") or context.get("full_name") or context.get("user_name"),
            email=context.get("email"),
            phone=context.get("phone"),
            source=f"chatbot_{session.channel_type}",
            commit=False,
        )
        context.set("lead_id", lead.id)
        session.session_metadata = {**(session.session_metadata or {}), "lead_id": lead.id}
        return "next"

    async def _action_notify_agent(self, db, tenant_id, session, node, context, result) -> str:
        result.queue_notification(self.notifications.build_notification(
            tenant_id,
            node.data.get("event") or "agent_notification",
            agent_id=node.data.get("agent_id") or context.agent_id,
            data={
                "session_id": session.id,
                "lead_id": context.lead_id,
                "message": context.render(node.data.get("notification_message")),
                "variables": context.public_variables(),
            },
        ))
        return "next"

    async def _action_transfer(self, db, tenant_id, session, node, context, result) -> str:
        result.message = context.render(node.data.get("message") or DEFAULT_TRANSFER_MESSAGE)
        session.session_metadata = {
            **(session.session_metadata or {}),
            "transferred_at": datetime.now(timezone.utc).isoformat(),
            "transfer_agent_id": node.data.get("agent_id") or context.agent_id,
        }
        await self._action_notify_agent(db, tenant_id, session, node, context, result)
        return TRANSFER_HANDLE

    def _render_value(self, value: Any, context: ConversationContext) -> Any:
        if isinstance(value, str):
            return context.render(value)
        if isinstance(value, dict):
            return {k: self._render_value(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self._render_value(v, context) for v in value]
        return value

    # -- inspection -----------------------------------------------------

    def get_flow_status(self, db: Session, session_id: str, tenant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Current node, status, context and history of a session."""
        session = self.states.get_session(db, session_id, tenant_id)
        if session is None:
            return None

        context = ConversationContext.from_dict(session.state_data)
        return {
            "session_id": session.id,
            "template_id": session.template_id,
            "channel_type": session.channel_type,
            "user_channel_id": session.user_channel_id,
            "status": session.status,
            "current_node": session.current_node_id,
            "waiting_for": context.waiting_for,
            "variables": context.public_variables(),
            "messages": [
                {
                    "role": m.role,
                    "content": m.content,
                    "node_id": m.node_id,
                    "created_at": m.created_at.isoformat() if m.created_at else None,
                }
                for m in self.states.get_messages(db, session.id)
            ],
            "execution_history": [
                {"from": t.from_node_id, "to": t.to_node_id, "handle": t.handle}
                for t in self.states.get_transitions(db, session.id)
            ],
            "last_interaction_at": session.last_interaction_at.isoformat() if session.last_interaction_at else None,
        }

    async def health_check(self) -> Dict[str, Any]:
        return {
            "healthy": True,
            "core_node_types": [t.value for t in CORE_NODE_TYPES],
            "business_node_types": self.registry.types(),
            "action_types": sorted(self.action_handlers),
            "max_steps": self.max_steps,
            "max_node_visits": self.max_node_visits,
            "stats": dict(self.stats),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


# Global flow engine instance
flow_engine = FlowEngine()
