"""Workflow graph schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes (trigger, action, condition,
agent) joined by edges. Condition nodes pick an outgoing edge by its branch
label; every other node follows its first outgoing edge.

Security-first design:
- No arbitrary code execution in conditions (sandboxed expressions only)
- Comprehensive validation before execution
"""

from enum import Enum
from typing import Any

import networkx as nx
from pydantic import BaseModel, Field, ValidationError, field_validator

from flowcore.core.conditions import ConditionError, TransitionCondition, parse_condition


class GraphError(Exception):
    """Workflow graph is invalid or has no start node."""

    pass


class NodeType(str, Enum):
    """Built-in node types. Other types may be added through the handler registry."""

    TRIGGER = "trigger"  # Entry point, passes inputs through
    ACTION = "action"  # Performs a side effect
    CONDITION = "condition"  # Chooses the 'yes' or 'no' branch
    AGENT = "agent"  # Delegates to an agent


class ConditionConfig(BaseModel):
    """Configuration for CONDITION nodes.

    The default handler needs ``condition`` (an expression such as
    ``score >= 70``) or a structured ``rule``. Custom handlers may use
    other keys.
    """

    condition: str | None = None
    rule: TransitionCondition | None = None

    @field_validator("condition")
    @classmethod
    def validate_expression(cls, v):
        if v is not None:
            try:
                parse_condition(v)
            except ConditionError as e:
                raise ValueError(str(e)) from e
        return v


class ActionConfig(BaseModel):
    """Configuration for ACTION nodes."""

    model_config = {"extra": "allow"}
    action: str | None = None


class AgentConfig(BaseModel):
    """Configuration for AGENT nodes."""

    model_config = {"extra": "allow"}
    agent_id: str | None = None
    prompt: str | None = None


class Node(BaseModel):
    """Graph node with a type and an opaque, type-specific config."""

    id: str = Field(min_length=1)
    type: NodeType | str
    label: str | None = None
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    # Declared data names, documentation only
    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)

    # UI metadata (position, styling) for visual editors
    ui_metadata: dict | None = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        if isinstance(v, str) and not isinstance(v, NodeType):
            if not v.strip():
                raise ValueError("Node type must not be empty")
            try:
                return NodeType(v.strip().lower())
            except ValueError:
                return v
        return v

    @property
    def type_name(self) -> str:
        return self.type.value if isinstance(self.type, NodeType) else self.type

    @property
    def display_name(self) -> str:
        return self.label or self.id


class Edge(BaseModel):
    """Directed edge between nodes with an optional branch label and guard."""

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    source_handle: str | None = None
    target_handle: str | None = None
    label: str | None = None
    condition: str | None = None  # Guard expression, checked for non-condition sources

    @property
    def branch_key(self) -> str:
        """Lower-cased label used to match condition paths ('' if unlabeled)."""
        return (self.label or self.source_handle or "").strip().lower()


class WorkflowGraph(BaseModel):
    """Complete workflow definition"""

    id: str
    name: str = ""
    description: str | None = None
    version: str = "1.0.0"
    tags: list[str] = Field(default_factory=list)

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict)

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure.
        Returns list of validation errors.
        """
        errors = []

        if not self.nodes:
            errors.append("Workflow has no nodes")

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        # Every edge must reference existing nodes
        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
            if edge.condition is not None:
                try:
                    parse_condition(edge.condition)
                except ConditionError as e:
                    errors.append(f"Edge {edge.id}: {e}")

        # Config is otherwise opaque: a registered handler may read other keys
        for node in self.nodes:
            if node.type == NodeType.CONDITION:
                try:
                    ConditionConfig.model_validate(node.config)
                except ValidationError as e:
                    errors.append(f"CONDITION node '{node.id}' has invalid config: {e}")

        return errors

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        """Outgoing edges of a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def get_root_nodes(self) -> list[str]:
        """Nodes with no incoming edges, in declaration order."""
        G = self._to_networkx()
        return [node.id for node in self.nodes if G.in_degree(node.id) == 0]

    def get_terminal_nodes(self) -> set[str]:
        """Find nodes with no outgoing edges"""
        G = self._to_networkx()
        return {n for n in G.nodes() if G.out_degree(n) == 0}

    def has_cycles(self) -> bool:
        return not nx.is_directed_acyclic_graph(self._to_networkx())

    def find_start_node(self, override: str | None = None) -> Node:
        """Choose the node a run starts from.

        Order: explicit override, first trigger node, then the unique node
        with no incoming edges.

        Raises:
            GraphError: If no start node can be determined.
        """
        if override is not None:
            node = self.get_node(override)
            if node is None:
                raise GraphError(f"Start node '{override}' not found in workflow '{self.id}'")
            return node

        for node in self.nodes:
            if node.type == NodeType.TRIGGER:
                return node

        roots = self.get_root_nodes()
        if len(roots) == 1:
            return self.get_node(roots[0])

        if not roots:
            raise GraphError(f"Workflow '{self.id}' has no start node (every node has an incoming edge)")
        raise GraphError(
            f"Workflow '{self.id}' has no trigger node and multiple candidate start nodes: {roots}"
        )
