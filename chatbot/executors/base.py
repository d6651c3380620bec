"""
Executor contract and registry for business nodes.

Every business executor is an async callable::

    async def execute(tenant_id, context, node_data, db) -> NodeResult

It receives a copy of the conversation context and returns the augmented copy
in its result together with the handle of the outgoing edge to follow.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from chatbot.conversation.context import ConversationContext
from chatbot.conversation.flow_graph import FlowError, normalize_node_type

logger = logging.getLogger(__name__)


class NodeExecutionError(FlowError):
    """Raised by executors for failures that should take the node's error branch."""
    pass


@dataclass
class NodeResult:
    """Outcome of executing one node.

    ``handle`` names the outgoing edge to follow; ``None`` means the node is now
    waiting for the user's reply.
    """
    handle: Optional[str]
    context: ConversationContext
    message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def waits_for_input(self) -> bool:
        return self.handle is None

    def queue_notification(self, notification: Dict[str, Any]) -> None:
        self.metadata.setdefault("notifications", []).append(notification)

    @property
    def notifications(self) -> List[Dict[str, Any]]:
        return self.metadata.get("notifications", [])


Executor = Callable[[str, ConversationContext, Dict[str, Any], Session], Awaitable[NodeResult]]


class ExecutorRegistry:
    """Maps node types (and their builder aliases) to executor callables."""

    def __init__(self):
        self._executors: Dict[str, Executor] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, node_type: str, *aliases: str) -> Callable[[Executor], Executor]:
        """Decorator registering an executor for ``node_type``."""
        canonical = normalize_node_type(node_type)

        def decorator(func: Executor) -> Executor:
            if canonical in self._executors:
                logger.warning(f"Replacing executor for node type '{canonical}'")
            self._executors[canonical] = func
            for alias in aliases:
                self._aliases[normalize_node_type(alias)] = canonical
            return func

        return decorator

    def resolve(self, node_type: str) -> Optional[str]:
        name = normalize_node_type(node_type)
        if name in self._executors:
            return name
        return self._aliases.get(name)

    def get(self, node_type: str) -> Optional[Executor]:
        canonical = self.resolve(node_type)
        return self._executors.get(canonical) if canonical else None

    def __contains__(self, node_type: str) -> bool:
        return self.resolve(node_type) is not None

    def types(self) -> List[str]:
        return sorted(self._executors)


executor_registry = ExecutorRegistry()
