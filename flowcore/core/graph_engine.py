"""Workflow graph execution engine.

Walks a WorkflowGraph node by node:
- Handlers are resolved per node type from a NodeHandlerRegistry
- ExecutionState is persisted after every transition, so a crash loses at
  most the node that was in flight
- Condition nodes choose the 'yes'/'no' edge; other nodes follow their
  first outgoing edge
- pause() is observed between nodes, stop() as soon as the in-flight
  handler returns
- Observers receive every transition through subscribe()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from flowcore.core.conditions import evaluate_condition
from flowcore.core.config import EngineConfig
from flowcore.core.graph_schema import GraphError, Node, NodeType, WorkflowGraph
from flowcore.core.handlers import (
    HandlerExecutionError,
    NodeHandlerRegistry,
    UnsupportedNodeTypeError,
)
from flowcore.core.models import (
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    HistoryAction,
    NodeExecutionState,
    NodeRunStatus,
    Subtask,
    TaskGraph,
)
from flowcore.core.registry import WorkflowProvider
from flowcore.core.state import ExecutionStateStore

logger = logging.getLogger(__name__)


class ExecutionOptions(BaseModel):
    """Options for start() and resume()."""

    start_node_id: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    max_steps: int | None = Field(default=None, ge=1)


class ExecutionEventType(str, Enum):
    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    RUN_PAUSED = "run_paused"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_STOPPED = "run_stopped"
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    VARIABLE_SET = "variable_set"
    TASK_ADDED = "task_added"


class ExecutionEvent(BaseModel):
    """Notification pushed to observers after a transition is persisted."""

    event_type: ExecutionEventType
    workflow_id: str
    session_id: str
    status: ExecutionStatus
    node_id: str | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


Observer = Callable[[ExecutionEvent], None]


class WorkflowExecutionEngine:
    """
    Drives ExecutionState through Idle -> Running -> {Paused <-> Running, Completed, Error}.

    The engine keeps the live state of runs it is currently driving, so
    pause/stop/set_variable issued while a handler is in flight act on that
    state and are never overwritten by the run's next save.
    """

    def __init__(
        self,
        store: ExecutionStateStore,
        provider: WorkflowProvider | None = None,
        registry: NodeHandlerRegistry | None = None,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.provider = provider
        self.registry = registry or NodeHandlerRegistry()
        self.config = config or EngineConfig()
        self._active: dict[tuple[str, str], ExecutionState] = {}
        self._graphs: dict[str, WorkflowGraph] = {}
        self._observers: list[Observer] = []

    # ========== Observers ==========

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _publish(
        self,
        event_type: ExecutionEventType,
        state: ExecutionState,
        node_id: str | None = None,
    ) -> None:
        event = ExecutionEvent(
            event_type=event_type,
            workflow_id=state.workflow_id,
            session_id=state.session_id,
            status=state.status,
            node_id=node_id,
            error=state.error,
        )
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception(f"Observer failed handling {event_type.value}")

    # ========== State helpers ==========

    def _save(self, state: ExecutionState) -> None:
        state.updated_at = datetime.now(UTC)
        self.store.save(state.workflow_id, state.session_id, state)

    def _lookup(self, workflow_id: str, session_id: str) -> ExecutionState | None:
        """Live state if this engine is driving the run, else the stored one."""
        live = self._active.get((workflow_id, session_id))
        if live is not None:
            return live
        return self.store.load(workflow_id, session_id)

    def _get_graph(self, workflow_id: str) -> WorkflowGraph | None:
        if self.provider is not None:
            graph = self.provider.get_workflow(workflow_id)
            if graph is not None:
                return graph
        return self._graphs.get(workflow_id)

    @staticmethod
    def _result(state: ExecutionState) -> ExecutionResult:
        return ExecutionResult(
            success=state.status != ExecutionStatus.ERROR,
            workflow_id=state.workflow_id,
            session_id=state.session_id,
            status=state.status,
            outputs=dict(state.variables),
            error=state.error,
        )

    @staticmethod
    def _failure(
        workflow_id: str, session_id: str, error: str, status: ExecutionStatus = ExecutionStatus.IDLE
    ) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            workflow_id=workflow_id,
            session_id=session_id,
            status=status,
            error=error,
        )

    # ========== Public API ==========

    async def start(
        self,
        graph: WorkflowGraph,
        session_id: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Start a new run of ``graph``.

        Raises:
            GraphError: If the graph is invalid or has no start node. No
                state is created in that case.
        """
        options = options or ExecutionOptions()
        errors = graph.validate_graph()
        if errors:
            raise GraphError(f"Workflow '{graph.id}' is invalid: {'; '.join(errors)}")
        start_node = graph.find_start_node(options.start_node_id)

        key = (graph.id, session_id)
        if key in self._active:
            return self._failure(
                graph.id, session_id, "Workflow is already running", ExecutionStatus.RUNNING
            )

        existing = self.store.load(graph.id, session_id)
        if existing is not None and existing.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED):
            logger.warning(
                f"Restarting workflow {graph.id}/{session_id} from status {existing.status.value}"
            )

        self._graphs[graph.id] = graph
        state = ExecutionState(
            workflow_id=graph.id,
            session_id=session_id,
            status=ExecutionStatus.RUNNING,
            current_node_id=start_node.id,
            variables=dict(options.variables),
            tasks=existing.tasks if existing is not None else [],
        )
        self._save(state)
        self._publish(ExecutionEventType.RUN_STARTED, state, start_node.id)
        logger.info(f"Started workflow {graph.id}/{session_id} at node {start_node.id}")

        return await self._run(graph, state, start_node.id, options.max_steps)

    async def resume(
        self,
        workflow_id: str,
        session_id: str,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Continue a paused run from its next node (or ``options.start_node_id``)."""
        options = options or ExecutionOptions()
        if (workflow_id, session_id) in self._active:
            return self._failure(
                workflow_id, session_id, "Workflow is already running", ExecutionStatus.RUNNING
            )

        state = self.store.load(workflow_id, session_id)
        if state is None:
            return self._failure(workflow_id, session_id, "No execution state found")
        if state.status != ExecutionStatus.PAUSED:
            return self._failure(
                workflow_id,
                session_id,
                f"Cannot resume workflow in status '{state.status.value}'",
                state.status,
            )

        graph = self._get_graph(workflow_id)
        if graph is None:
            return self._failure(
                workflow_id, session_id, f"Workflow '{workflow_id}' not found", state.status
            )

        node_id = options.start_node_id or state.current_node_id
        if node_id is None:
            node_id = graph.find_start_node().id
        elif graph.get_node(node_id) is None:
            raise GraphError(f"Node '{node_id}' not found in workflow '{workflow_id}'")

        state.variables.update(options.variables)
        state.status = ExecutionStatus.RUNNING
        state.current_node_id = node_id
        state.error = None
        state.record(HistoryAction.RESUME, node_id)
        self._save(state)
        self._publish(ExecutionEventType.RUN_RESUMED, state, node_id)
        logger.info(f"Resumed workflow {workflow_id}/{session_id} at node {node_id}")

        return await self._run(graph, state, node_id, options.max_steps)

    async def pause(self, workflow_id: str, session_id: str) -> bool:
        """Request a pause. Takes effect after the in-flight node finishes."""
        state = self._lookup(workflow_id, session_id)
        if state is None or state.status != ExecutionStatus.RUNNING:
            return False

        state.status = ExecutionStatus.PAUSED
        state.record(HistoryAction.PAUSE, state.current_node_id)
        self._save(state)
        self._publish(ExecutionEventType.RUN_PAUSED, state, state.current_node_id)
        logger.info(f"Paused workflow {workflow_id}/{session_id}")
        return True

    async def stop(self, workflow_id: str, session_id: str) -> bool:
        """Force a non-terminal run to Completed. No further nodes run."""
        state = self._lookup(workflow_id, session_id)
        if state is None or state.status.is_terminal:
            return False

        state.status = ExecutionStatus.COMPLETED
        state.record(HistoryAction.STOP, state.current_node_id)
        self._save(state)
        self._publish(ExecutionEventType.RUN_STOPPED, state, state.current_node_id)
        logger.info(f"Stopped workflow {workflow_id}/{session_id}")
        return True

    async def set_variable(self, workflow_id: str, session_id: str, name: str, value: Any) -> bool:
        state = self._lookup(workflow_id, session_id)
        if state is None:
            return False

        state.variables[name] = value
        state.record(HistoryAction.VARIABLE, state.current_node_id, name=name)
        self._save(state)
        self._publish(ExecutionEventType.VARIABLE_SET, state, state.current_node_id)
        return True

    def get_state(self, workflow_id: str, session_id: str) -> ExecutionState | None:
        state = self._lookup(workflow_id, session_id)
        return state.model_copy(deep=True) if state is not None else None

    async def add_task(self, workflow_id: str, session_id: str, task_graph: TaskGraph) -> ExecutionState:
        """Attach a task graph to a run, creating an idle state if none exists."""
        state = self._lookup(workflow_id, session_id)
        if state is None:
            state = ExecutionState(workflow_id=workflow_id, session_id=session_id)

        state.tasks = [t for t in state.tasks if t.id != task_graph.id]
        state.tasks.append(task_graph)
        self._save(state)
        self._publish(ExecutionEventType.TASK_ADDED, state)
        return state.model_copy(deep=True)

    def get_tasks(self, workflow_id: str, session_id: str) -> list[Subtask]:
        state = self._lookup(workflow_id, session_id)
        if state is None:
            return []
        return [subtask.model_copy() for task in state.tasks for subtask in task.subtasks]

    # ========== Execution loop ==========

    async def _run(
        self,
        graph: WorkflowGraph,
        state: ExecutionState,
        node_id: str,
        max_steps: int | None,
    ) -> ExecutionResult:
        key = (state.workflow_id, state.session_id)
        # The configured cap bounds cyclic graphs only
        limit = max_steps
        if limit is None and graph.has_cycles():
            limit = self.config.max_steps
        self._active[key] = state
        try:
            current: str | None = node_id
            steps = 0
            while current is not None and state.status == ExecutionStatus.RUNNING:
                if limit is not None and steps >= limit:
                    state.status = ExecutionStatus.PAUSED
                    state.current_node_id = current
                    state.record(HistoryAction.PAUSE, current, reason="max_steps", max_steps=limit)
                    self._save(state)
                    self._publish(ExecutionEventType.RUN_PAUSED, state, current)
                    logger.warning(
                        f"Workflow {graph.id}/{state.session_id} paused after {limit} steps"
                    )
                    break

                node = graph.get_node(current)
                if node is None:
                    raise GraphError(f"Node '{current}' not found in workflow '{graph.id}'")
                current = await self._execute_node(graph, state, node)
                steps += 1
        finally:
            self._active.pop(key, None)
        return self._result(state)

    async def _execute_node(
        self, graph: WorkflowGraph, state: ExecutionState, node: Node
    ) -> str | None:
        """Execute one node. Returns the next node id, or None when the run is over."""
        state.current_node_id = node.id
        node_state = NodeExecutionState(
            node_id=node.id,
            status=NodeRunStatus.RUNNING,
            inputs=dict(state.variables),
            started_at=datetime.now(UTC),
        )
        state.node_states[node.id] = node_state
        state.record(HistoryAction.START, node.id)
        self._save(state)
        self._publish(ExecutionEventType.NODE_STARTED, state, node.id)

        try:
            handler = self.registry.require(node.type)
            outputs = await handler.execute(node, dict(state.variables))
            if outputs is None:
                outputs = {}
            if not isinstance(outputs, dict):
                raise TypeError(f"handler returned {type(outputs).__name__}, expected dict")
        except UnsupportedNodeTypeError as e:
            self._fail(state, node_state, str(e))
            return None
        except Exception as e:
            error = HandlerExecutionError(node.id, node.type_name, e)
            logger.error(f"Node {node.id} failed: {e}")
            self._fail(state, node_state, str(error))
            return None

        node_state.status = NodeRunStatus.COMPLETED
        node_state.outputs = dict(outputs)
        node_state.completed_at = datetime.now(UTC)
        state.variables.update(outputs)
        state.step_count += 1
        state.record(HistoryAction.COMPLETE, node.id)

        # Stopped while the handler was in flight
        if state.status == ExecutionStatus.COMPLETED:
            self._save(state)
            self._publish(ExecutionEventType.NODE_COMPLETED, state, node.id)
            return None

        next_id = self._select_successor(graph, node, outputs, state.variables)
        if next_id is None:
            state.status = ExecutionStatus.COMPLETED
            self._save(state)
            self._publish(ExecutionEventType.NODE_COMPLETED, state, node.id)
            self._publish(ExecutionEventType.RUN_COMPLETED, state, node.id)
            logger.info(f"Workflow {state.workflow_id}/{state.session_id} completed at {node.id}")
            return None

        if state.status == ExecutionStatus.PAUSED:
            # Resume picks up at the successor
            state.current_node_id = next_id

        self._save(state)
        self._publish(ExecutionEventType.NODE_COMPLETED, state, node.id)
        return next_id

    def _fail(self, state: ExecutionState, node_state: NodeExecutionState, error: str) -> None:
        node_state.status = NodeRunStatus.ERROR
        node_state.error = error
        node_state.completed_at = datetime.now(UTC)
        # A stop that landed while the handler was running already made the run terminal
        if not state.status.is_terminal:
            state.status = ExecutionStatus.ERROR
            state.error = error
        state.record(HistoryAction.ERROR, node_state.node_id, error=error)
        self._save(state)
        self._publish(ExecutionEventType.NODE_FAILED, state, node_state.node_id)
        if state.status == ExecutionStatus.ERROR:
            self._publish(ExecutionEventType.RUN_FAILED, state, node_state.node_id)

    # ========== Branching ==========

    @staticmethod
    def _condition_path(outputs: dict[str, Any]) -> str:
        path = outputs.get("path")
        if isinstance(path, bool):
            return "true" if path else "false"
        if isinstance(path, str) and path.strip().lower() in ("true", "false"):
            return path.strip().lower()
        return "true" if outputs.get("condition_result") else "false"

    def _select_successor(
        self,
        graph: WorkflowGraph,
        node: Node,
        outputs: dict[str, Any],
        variables: dict[str, Any],
    ) -> str | None:
        edges = graph.outgoing_edges(node.id)

        match node.type:
            case NodeType.CONDITION:
                path = self._condition_path(outputs)
                accepted = {path, "yes" if path == "true" else "no"}
                for edge in edges:
                    if edge.branch_key in accepted:
                        return edge.target
                if path == "true":
                    for edge in edges:
                        if not edge.branch_key:
                            return edge.target
                logger.info(f"Condition {node.id} took path '{path}' with no matching edge")
                return None
            case _:
                for edge in edges:
                    if edge.condition is None or evaluate_condition(edge.condition, variables):
                        return edge.target
                return None
