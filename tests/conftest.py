# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowcore test suite.

Provides:
- In-memory and SQLite stores
- Sample workflow graphs (linear, yes/no branch)
- Engine and registry wired together
"""

from __future__ import annotations

from pathlib import Path

import pytest

from flowcore.core.graph_engine import WorkflowExecutionEngine
from flowcore.core.graph_schema import Edge, Node, WorkflowGraph
from flowcore.core.handlers import NodeHandlerRegistry
from flowcore.core.registry import WorkflowRegistry
from flowcore.core.state import Database, InMemoryStateStore


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """SQLite database in a temporary directory."""
    return Database(tmp_path / "test.db")


# =============================================================================
# Workflow graphs
# =============================================================================


@pytest.fixture
def linear_graph() -> WorkflowGraph:
    """trigger -> a1 -> a2"""
    return WorkflowGraph(
        id="linear",
        name="Linear",
        nodes=[
            Node(id="t", type="trigger"),
            Node(id="a1", type="action", config={"action": "first"}),
            Node(id="a2", type="action", config={"action": "second"}),
        ],
        edges=[
            Edge(id="e1", source="t", target="a1"),
            Edge(id="e2", source="a1", target="a2"),
        ],
    )


@pytest.fixture
def branch_graph() -> WorkflowGraph:
    """trigger -> condition(score >= 70) -yes-> approve / -no-> reject"""
    return WorkflowGraph(
        id="review",
        name="Review",
        nodes=[
            Node(id="t", type="trigger"),
            Node(id="c", type="condition", config={"condition": "score >= 70"}),
            Node(id="approve", type="action", config={"action": "approve"}),
            Node(id="reject", type="action", config={"action": "reject"}),
        ],
        edges=[
            Edge(id="e1", source="t", target="c"),
            Edge(id="e2", source="c", target="approve", label="yes"),
            Edge(id="e3", source="c", target="reject", label="no"),
        ],
    )


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture
def handler_registry() -> NodeHandlerRegistry:
    return NodeHandlerRegistry()


@pytest.fixture
def workflow_registry() -> WorkflowRegistry:
    return WorkflowRegistry()


@pytest.fixture
def engine(store, workflow_registry, handler_registry) -> WorkflowExecutionEngine:
    return WorkflowExecutionEngine(store, provider=workflow_registry, registry=handler_registry)
