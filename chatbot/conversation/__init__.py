"""
Conversation module: flow graph, context and condition evaluation.

The engine and state manager depend on the business executors and services;
import them from ``chatbot.conversation.flow_engine`` and
``chatbot.conversation.state_manager`` directly.
"""

from .flow_graph import (
    FlowError,
    FlowDefinitionError,
    FlowEdge,
    FlowLoader,
    FlowNode,
    FlowTemplate,
    NodeType,
)
from .context import ConversationContext
from .conditions import ConditionError, evaluate_condition

__all__ = [
    'FlowError',
    'FlowDefinitionError',
    'FlowEdge',
    'FlowLoader',
    'FlowNode',
    'FlowTemplate',
    'NodeType',
    'ConversationContext',
    'ConditionError',
    'evaluate_condition',
]
