"""
Flow graph model for chatbot templates.
Parses the builder's node/edge JSON document (or a YAML file of the same shape)
into typed nodes and a connection map the flow engine walks.
"""

import logging
import re
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum

import yaml

logger = logging.getLogger(__name__)

DEFAULT_HANDLE = "next"

# Handles that must be wired explicitly; they never fall back to "next".
STRICT_HANDLES = {"error", "failure", "no", "false", "invalid"}


class FlowError(Exception):
    """Base error for flow definition and execution."""
    pass


class FlowDefinitionError(FlowError):
    """Raised when a template document is not a valid flow graph."""
    pass


class NodeType(Enum):
    """Node types understood by the flow engine."""
    START = "start"
    MESSAGE = "message"
    TEXT = "text"
    INPUT = "input"
    BUTTONS = "buttons"
    LIST = "list"
    CONDITION = "condition"
    CONDITIONAL = "conditional"
    AI = "ai"
    AI_RESPONSE = "ai_response"
    ACTION = "action"
    ROUTER = "router"
    END = "end"

    # Business nodes
    CHECK_AVAILABILITY = "check_availability"
    BOOK_APPOINTMENT = "book_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    LEAD_QUALIFICATION = "lead_qualification"
    SERVICES = "services"
    PRODUCTS = "products"


BUSINESS_NODE_TYPES = {
    NodeType.CHECK_AVAILABILITY,
    NodeType.BOOK_APPOINTMENT,
    NodeType.CANCEL_APPOINTMENT,
    NodeType.RESCHEDULE_APPOINTMENT,
    NodeType.LEAD_QUALIFICATION,
    NodeType.SERVICES,
    NodeType.PRODUCTS,
}

# Builder names that do not reduce to a NodeType value by case/separator folding.
NODE_TYPE_ALIASES = {
    "reschedule": NodeType.RESCHEDULE_APPOINTMENT,
    "reschedule_node": NodeType.RESCHEDULE_APPOINTMENT,
    "service": NodeType.SERVICES,
    "product": NodeType.PRODUCTS,
    "qualification": NodeType.LEAD_QUALIFICATION,
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_node_type(raw_type: str) -> str:
    """Fold builder type names (``check-availability``, ``checkAvailabilityNode``) to snake case."""
    if not raw_type:
        return ""
    name = _CAMEL_BOUNDARY.sub("_", raw_type.strip())
    name = name.replace("-", "_").replace(" ", "_").lower()
    if name.endswith("_node") and name != "_node":
        name = name[: -len("_node")]
    return name


def parse_node_type(raw_type: str) -> Optional[NodeType]:
    """Resolve a raw type to a NodeType, or None for types the engine does not know."""
    name = normalize_node_type(raw_type)
    try:
        return NodeType(name)
    except ValueError:
        return NODE_TYPE_ALIASES.get(name) or NODE_TYPE_ALIASES.get(name.replace("_", ""))


@dataclass
class FlowNode:
    """A node in the flow graph."""
    id: str
    type: Optional[NodeType]
    raw_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    position: Optional[Dict[str, float]] = None

    @property
    def label(self) -> str:
        return str(self.data.get("label") or "")

    @property
    def is_business_node(self) -> bool:
        return self.type in BUSINESS_NODE_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.raw_type,
            "position": self.position,
            "data": self.data,
        }


@dataclass
class FlowEdge:
    """Directed edge; source_handle selects which output of a multi-output node it leaves from."""
    source: str
    target: str
    source_handle: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
        }


@dataclass
class FlowTemplate:
    """Complete flow graph of a chatbot template."""
    id: str
    tenant_id: Optional[str]
    name: str
    nodes: Dict[str, FlowNode]
    edges: List[FlowEdge]
    status: str = "draft"
    version: int = 1
    description: Optional[str] = None

    def __post_init__(self):
        self._connections: Optional[Dict[str, Dict[str, str]]] = None

    def connection_map(self) -> Dict[str, Dict[str, str]]:
        """Map ``source -> {handle: target}``; edges without a handle use ``next``."""
        if self._connections is None:
            connections: Dict[str, Dict[str, str]] = {}
            for edge in self.edges:
                handle = edge.source_handle or DEFAULT_HANDLE
                connections.setdefault(edge.source, {})[handle] = edge.target
            self._connections = connections
        return self._connections

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def outgoing_handles(self, node_id: str) -> Dict[str, str]:
        return self.connection_map().get(node_id, {})

    def next_node_id(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """Target of ``node_id`` leaving through ``handle``."""
        outgoing = self.outgoing_handles(node_id)
        handle = handle or DEFAULT_HANDLE
        if handle in outgoing:
            return outgoing[handle]
        if handle in STRICT_HANDLES:
            return None
        return outgoing.get(DEFAULT_HANDLE)

    def start_node(self) -> Optional[FlowNode]:
        """The explicit start node, else the first node without incoming edges, else the first node."""
        for node in self.nodes.values():
            if node.type == NodeType.START:
                return node

        targets = {edge.target for edge in self.edges}
        for node in self.nodes.values():
            if node.id not in targets:
                return node

        return next(iter(self.nodes.values()), None)

    def find_nodes(self, *node_types: NodeType) -> List[FlowNode]:
        return [node for node in self.nodes.values() if node.type in node_types]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "version": self.version,
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "edges": [edge.to_dict() for edge in self.edges],
        }


class FlowLoader:
    """Loads flow templates from the persisted JSON document or YAML files."""

    @staticmethod
    def load_flow_from_file(file_path: str) -> FlowTemplate:
        """Load a flow template from a YAML file."""
        try:
            with open(file_path, 'r', encoding='utf-8') as file:
                flow_data = yaml.safe_load(file)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading flow from {file_path}: {e}")
            raise FlowDefinitionError(f"Cannot read flow file {file_path}: {e}") from e

        return FlowLoader.load_flow_from_dict(flow_data)

    @staticmethod
    def load_flow_from_dict(flow_data: Dict[str, Any], validate: bool = True) -> FlowTemplate:
        """Load a flow template from its document form."""
        if not isinstance(flow_data, dict):
            raise FlowDefinitionError("Flow document must be a mapping")

        raw_nodes = flow_data.get("nodes") or []
        raw_edges = flow_data.get("edges") or []
        if isinstance(raw_nodes, dict):
            # YAML flows may key nodes by id
            raw_nodes = [{"id": node_id, **(node or {})} for node_id, node in raw_nodes.items()]

        nodes: Dict[str, FlowNode] = {}
        for raw_node in raw_nodes:
            node = FlowLoader._parse_node(raw_node)
            if node.id in nodes:
                raise FlowDefinitionError(f"Duplicate node id: {node.id}")
            nodes[node.id] = node

        edges = [FlowLoader._parse_edge(raw_edge) for raw_edge in raw_edges]

        template = FlowTemplate(
            id=str(flow_data.get("id") or ""),
            tenant_id=flow_data.get("tenant_id"),
            name=flow_data.get("name") or "Untitled flow",
            description=flow_data.get("description"),
            status=flow_data.get("status") or "draft",
            version=int(flow_data.get("version") or 1),
            nodes=nodes,
            edges=edges,
        )

        if validate:
            FlowLoader.validate(template)

        return template

    @staticmethod
    def _parse_node(raw_node: Dict[str, Any]) -> FlowNode:
        if not isinstance(raw_node, dict) or not raw_node.get("id"):
            raise FlowDefinitionError(f"Node without id: {raw_node!r}")

        raw_type = raw_node.get("type") or ""
        node_type = parse_node_type(raw_type)
        if node_type is None:
            logger.warning(f"Unknown node type '{raw_type}' on node {raw_node['id']}")

        return FlowNode(
            id=str(raw_node["id"]),
            type=node_type,
            raw_type=raw_type,
            data=dict(raw_node.get("data") or {}),
            position=raw_node.get("position"),
        )

    @staticmethod
    def _parse_edge(raw_edge: Dict[str, Any]) -> FlowEdge:
        if not isinstance(raw_edge, dict) or not raw_edge.get("source") or not raw_edge.get("target"):
            raise FlowDefinitionError(f"Edge needs source and target: {raw_edge!r}")

        handle = raw_edge.get("sourceHandle", raw_edge.get("source_handle"))
        return FlowEdge(
            id=raw_edge.get("id"),
            source=str(raw_edge["source"]),
            target=str(raw_edge["target"]),
            source_handle=str(handle) if handle else None,
        )

    @staticmethod
    def validate(template: FlowTemplate) -> None:
        """Raise FlowDefinitionError when the graph cannot be executed."""
        if not template.nodes:
            raise FlowDefinitionError("Flow has no nodes")

        start_nodes = template.find_nodes(NodeType.START)
        if len(start_nodes) > 1:
            raise FlowDefinitionError(
                f"Flow has {len(start_nodes)} start nodes: {[n.id for n in start_nodes]}"
            )

        for edge in template.edges:
            if edge.source not in template.nodes:
                raise FlowDefinitionError(f"Edge source '{edge.source}' does not exist")
            if edge.target not in template.nodes:
                raise FlowDefinitionError(f"Edge target '{edge.target}' does not exist")
