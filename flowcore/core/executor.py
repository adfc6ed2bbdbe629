"""Subtask execution for task graphs.

The driving loop in process_task() is the only writer of the TaskGraph.
Dispatched agent calls receive a read-only context and return a result; the
loop applies results one at a time as calls complete, so concurrent fan-out
never loses an update.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from flowcore.core.agents import (
    AgentExecutor,
    SubtaskContext,
    ToolCall,
    build_default_executors,
    compile_results,
)
from flowcore.core.config import TaskConfig
from flowcore.core.models import (
    AgentType,
    Subtask,
    SubtaskStatus,
    TaskExecutionResult,
    TaskGraph,
    TaskGraphStatus,
)
from flowcore.core.scheduler import (
    DependencyError,
    SchedulerError,
    SubtaskDependencyScheduler,
    require_subtask,
)
from flowcore.core.state import TaskGraphStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SubtaskExecutor:
    """Execute subtasks of a TaskGraph in dependency order.

    Failures are local: a failing agent marks only its subtask Failed. The
    graph is Failed only when no subtask completed.
    """

    def __init__(
        self,
        scheduler: SubtaskDependencyScheduler | None = None,
        executors: dict[AgentType, AgentExecutor] | None = None,
        tool: ToolCall | None = None,
        store: TaskGraphStore | None = None,
        config: TaskConfig | None = None,
    ):
        self.scheduler = scheduler or SubtaskDependencyScheduler()
        self.executors = build_default_executors(tool)
        if executors:
            self.executors.update(executors)
        self.store = store
        self.config = config or TaskConfig()

    # --- Graph mutation (single writer) ---

    def _persist(self, task_graph: TaskGraph) -> None:
        task_graph.updated_at = _utc_now()
        if self.store is not None:
            self.store.save_task_graph(task_graph)

    def _mark_started(self, task_graph: TaskGraph, subtask: Subtask) -> None:
        subtask.status = SubtaskStatus.IN_PROGRESS
        subtask.started_at = _utc_now()
        subtask.error = None
        self._persist(task_graph)

    def _mark_finished(
        self,
        task_graph: TaskGraph,
        subtask: Subtask,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        subtask.completed_at = _utc_now()
        if error is not None:
            subtask.status = SubtaskStatus.FAILED
            subtask.error = error
            logger.error(f"Subtask {subtask.id} ({subtask.agent_type.value}) failed: {error}")
        else:
            subtask.status = SubtaskStatus.COMPLETED
            subtask.result = result
            logger.info(f"Subtask {subtask.id} completed")
        self._persist(task_graph)

    # --- Dispatch ---

    def _build_context(self, task_graph: TaskGraph, subtask: Subtask, force: bool) -> SubtaskContext:
        """Collect dependency results.

        Raises:
            DependencyError: If a dependency is not completed and ``force`` is False.
        """
        results: dict[str, str] = {}
        for dep_id in subtask.depends_on:
            dep = task_graph.get_subtask(dep_id)
            if dep is not None and dep.status == SubtaskStatus.COMPLETED:
                results[dep_id] = dep.result or ""
                continue
            if not force:
                state = dep.status.value if dep is not None else "missing"
                raise DependencyError(subtask.id, f"dependency {dep_id} is {state}", [dep_id])
            logger.warning(f"Forcing {subtask.id} without result of dependency {dep_id}")
            results[dep_id] = ""

        return SubtaskContext(
            task_id=task_graph.id,
            original_query=task_graph.original_query,
            dependency_results=results,
            task_graph=task_graph.model_copy(deep=True),
        )

    async def _run_agent(self, subtask: Subtask, context: SubtaskContext) -> str:
        executor = self.executors.get(subtask.agent_type)
        if executor is None:
            raise SchedulerError(f"No executor for agent type '{subtask.agent_type.value}'")
        return await executor.execute(subtask, context)

    def _dispatch(self, task_graph: TaskGraph, subtask: Subtask, force: bool) -> asyncio.Task:
        context = self._build_context(task_graph, subtask, force)
        self._mark_started(task_graph, subtask)
        logger.info(f"Dispatching {subtask.id} ({subtask.agent_type.value}){' [forced]' if force else ''}")
        return asyncio.create_task(self._run_agent(subtask.model_copy(), context))

    def _apply(self, task_graph: TaskGraph, subtask_id: str, task: asyncio.Task) -> None:
        subtask = require_subtask(task_graph, subtask_id)
        try:
            result = task.result()
        except Exception as e:
            self._mark_finished(task_graph, subtask, error=str(e) or type(e).__name__)
        else:
            self._mark_finished(task_graph, subtask, result=result)

    # --- Public API ---

    async def execute_subtask(self, task_graph: TaskGraph, subtask_id: str, force: bool = False) -> Subtask:
        """Run one subtask: NotStarted -> InProgress -> Completed/Failed.

        An incomplete dependency fails the subtask unless ``force`` is set.

        Raises:
            SubtaskNotFoundError: If the id is not in the graph.
            SchedulerError: If the subtask was already started.
        """
        subtask = require_subtask(task_graph, subtask_id)
        if subtask.status != SubtaskStatus.NOT_STARTED:
            raise SchedulerError(f"Subtask '{subtask_id}' is already {subtask.status.value}")

        self._mark_started(task_graph, subtask)
        try:
            context = self._build_context(task_graph, subtask, force)
            result = await self._run_agent(subtask.model_copy(), context)
        except Exception as e:
            self._mark_finished(task_graph, subtask, error=str(e) or type(e).__name__)
        else:
            self._mark_finished(task_graph, subtask, result=result)
        return subtask

    async def process_task(self, task_graph: TaskGraph) -> TaskGraph:
        """Run every subtask to a terminal status.

        Up to ``max_parallel_subtasks`` independent subtasks run at once.
        When nothing is runnable and nothing is in flight, the loop counts
        stuck cycles; from ``stuck_threshold`` on, every stuck cycle forces
        the pending subtask with the fewest dependencies.
        """
        # In-progress subtasks of a loaded graph were interrupted by a crash
        for subtask in task_graph.subtasks:
            if subtask.status == SubtaskStatus.IN_PROGRESS:
                logger.warning(f"Re-queueing interrupted subtask {subtask.id}")
                subtask.status = SubtaskStatus.NOT_STARTED
        task_graph.status = TaskGraphStatus.IN_PROGRESS
        self._persist(task_graph)

        in_flight: dict[asyncio.Task, str] = {}
        stuck_cycles = 0
        try:
            while not task_graph.all_terminal():
                while len(in_flight) < self.config.max_parallel_subtasks:
                    subtask = self.scheduler.get_next_executable_subtask(task_graph)
                    if subtask is None:
                        break
                    stuck_cycles = 0
                    force = not self.scheduler.dependencies_satisfied(task_graph, subtask)
                    in_flight[self._dispatch(task_graph, subtask, force)] = subtask.id

                if in_flight:
                    done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        self._apply(task_graph, in_flight.pop(task), task)
                    continue

                stuck_cycles += 1
                logger.warning(
                    f"Task {task_graph.id}: no executable subtask "
                    f"(stuck cycle {stuck_cycles}/{self.config.stuck_threshold})"
                )
                if stuck_cycles >= self.config.stuck_threshold:
                    forced = self.scheduler.select_forced(task_graph)
                    if forced is None:
                        break
                    logger.warning(
                        f"Task {task_graph.id}: forcing {forced.id} with unmet dependencies {forced.depends_on}"
                    )
                    in_flight[self._dispatch(task_graph, forced, True)] = forced.id
                elif self.config.stuck_wait_seconds:
                    await asyncio.sleep(self.config.stuck_wait_seconds)
        finally:
            for task in in_flight:
                task.cancel()

        self._finalize(task_graph)
        return task_graph

    def _finalize(self, task_graph: TaskGraph) -> None:
        completed = [s for s in task_graph.subtasks if s.status == SubtaskStatus.COMPLETED]
        failed = [s for s in task_graph.subtasks if s.status == SubtaskStatus.FAILED]

        if failed and not completed:
            task_graph.status = TaskGraphStatus.FAILED
        else:
            task_graph.status = TaskGraphStatus.COMPLETED

        compilation = [s for s in completed if s.agent_type == AgentType.COMPILATION and s.result]
        if compilation:
            task_graph.final_result = compilation[-1].result
        elif completed:
            task_graph.final_result = compile_results(task_graph)
        self._persist(task_graph)
        logger.info(
            f"Task {task_graph.id} {task_graph.status.value}: "
            f"{len(completed)} completed, {len(failed)} failed"
        )

    async def execute_task(self, task_graph: TaskGraph) -> TaskExecutionResult:
        """Process a task graph and summarize the outcome."""
        await self.process_task(task_graph)
        failed = [s for s in task_graph.subtasks if s.status == SubtaskStatus.FAILED]
        error = None
        if failed:
            error = "Some subtasks failed: " + "; ".join(f"{s.id}: {s.error}" for s in failed)
        return TaskExecutionResult(
            success=not failed,
            task_id=task_graph.id,
            original_query=task_graph.original_query,
            result=task_graph.final_result,
            error=error,
            subtasks=[s.model_copy() for s in task_graph.subtasks],
        )
