"""Core modules for the flowcore execution engine."""

from flowcore.core.decomposition import TaskDecompositionGateway
from flowcore.core.executor import SubtaskExecutor
from flowcore.core.graph_engine import ExecutionOptions, WorkflowExecutionEngine
from flowcore.core.graph_schema import Edge, GraphError, Node, NodeType, WorkflowGraph
from flowcore.core.handlers import NodeHandlerRegistry
from flowcore.core.models import (
    AgentType,
    ExecutionState,
    ExecutionStatus,
    Subtask,
    SubtaskStatus,
    TaskGraph,
)
from flowcore.core.registry import WorkflowRegistry
from flowcore.core.router import TaskRouter
from flowcore.core.scheduler import SubtaskDependencyScheduler
from flowcore.core.state import Database, InMemoryStateStore

__all__ = [
    "AgentType",
    "Database",
    "Edge",
    "ExecutionOptions",
    "ExecutionState",
    "ExecutionStatus",
    "GraphError",
    "InMemoryStateStore",
    "Node",
    "NodeHandlerRegistry",
    "NodeType",
    "Subtask",
    "SubtaskDependencyScheduler",
    "SubtaskExecutor",
    "SubtaskStatus",
    "TaskDecompositionGateway",
    "TaskGraph",
    "TaskRouter",
    "WorkflowExecutionEngine",
    "WorkflowGraph",
    "WorkflowRegistry",
]
