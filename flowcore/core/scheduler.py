"""Dependency scheduler for flat task graphs.

Picks the next subtask to run from a TaskGraph whose subtasks are linked only
by ``depends_on`` ids. Missing and cyclic dependencies never raise: they are
pruned or broken so the graph keeps making progress.
"""

from __future__ import annotations

import logging
import threading

from flowcore.core.models import Subtask, SubtaskStatus, TaskGraph

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Error in task graph scheduling."""

    pass


class DependencyError(SchedulerError):
    """A subtask has a missing or cyclic dependency."""

    def __init__(self, subtask_id: str, message: str, dependency_ids: list[str] | None = None):
        self.subtask_id = subtask_id
        self.dependency_ids = dependency_ids or []
        super().__init__(f"Subtask '{subtask_id}': {message}")


class SubtaskNotFoundError(SchedulerError):
    """A subtask id does not exist in the task graph."""

    pass


def require_subtask(task_graph: TaskGraph, subtask_id: str) -> Subtask:
    subtask = task_graph.get_subtask(subtask_id)
    if subtask is None:
        raise SubtaskNotFoundError(f"Subtask '{subtask_id}' not found in task {task_graph.id}")
    return subtask


class SubtaskDependencyScheduler:
    """Resolve executable order over a TaskGraph.

    Selection order in get_next_executable_subtask():
    1. Prune dependency ids that do not exist in the graph (with a warning)
    2. First not-started subtask with no dependencies
    3. First not-started subtask whose dependencies are all completed
    4. If the pending subtasks contain a cycle, the cycle member with the
       fewest dependencies (ties broken by list order)
    5. Otherwise None: wait for in-progress work, or let the driving loop
       apply its deadlock fallback
    """

    def __init__(self):
        # Pruning mutates depends_on; callers may share one scheduler across graphs
        self._lock = threading.RLock()

    def prune_missing_dependencies(self, task_graph: TaskGraph) -> list[DependencyError]:
        """Drop dependency ids that reference no subtask. Returns what was pruned."""
        pruned: list[DependencyError] = []
        with self._lock:
            known = task_graph.subtask_ids
            for subtask in task_graph.subtasks:
                missing = [d for d in subtask.depends_on if d not in known]
                if not missing:
                    continue
                subtask.depends_on = [d for d in subtask.depends_on if d in known]
                issue = DependencyError(subtask.id, f"pruned missing dependencies {missing}", missing)
                logger.warning(str(issue))
                pruned.append(issue)
        return pruned

    def dependencies_satisfied(self, task_graph: TaskGraph, subtask: Subtask) -> bool:
        for dep_id in subtask.depends_on:
            dep = task_graph.get_subtask(dep_id)
            # Unknown ids count as satisfied; they are pruned on the next pass
            if dep is not None and dep.status != SubtaskStatus.COMPLETED:
                return False
        return True

    def get_next_executable_subtask(self, task_graph: TaskGraph) -> Subtask | None:
        with self._lock:
            self.prune_missing_dependencies(task_graph)
            pending = [s for s in task_graph.subtasks if s.status == SubtaskStatus.NOT_STARTED]
            if not pending:
                return None

            for subtask in pending:
                if not subtask.depends_on:
                    return subtask

            for subtask in pending:
                if self.dependencies_satisfied(task_graph, subtask):
                    return subtask

            cycle = self.find_cycle(task_graph)
            if cycle:
                members = [s for s in pending if s.id in set(cycle)]
                chosen = min(members, key=lambda s: len(s.depends_on))
                logger.warning(
                    f"Dependency cycle {' -> '.join(cycle)} in task {task_graph.id}; "
                    f"breaking it at {chosen.id}"
                )
                return chosen

            return None

    def find_cycle(self, task_graph: TaskGraph) -> list[str] | None:
        """Depth-first search with a recursion stack over not-started subtasks.

        Uses an explicit stack so deep graphs cannot exhaust the call stack.
        Returns the ids on the first cycle found, in dependency order.
        """
        pending = {s.id: s for s in task_graph.subtasks if s.status == SubtaskStatus.NOT_STARTED}
        edges = {sid: [d for d in s.depends_on if d in pending] for sid, s in pending.items()}

        visited: set[str] = set()
        on_stack: set[str] = set()
        for root in pending:
            if root in visited:
                continue
            path = [root]
            stack = [(root, iter(edges[root]))]
            visited.add(root)
            on_stack.add(root)
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    path.pop()
                    on_stack.discard(node)
                    continue
                if child in on_stack:
                    return path[path.index(child):]
                if child not in visited:
                    visited.add(child)
                    on_stack.add(child)
                    path.append(child)
                    stack.append((child, iter(edges[child])))
        return None

    def select_forced(self, task_graph: TaskGraph) -> Subtask | None:
        """Pending subtask with the fewest dependencies, regardless of their status."""
        pending = [s for s in task_graph.subtasks if s.status == SubtaskStatus.NOT_STARTED]
        if not pending:
            return None
        return min(pending, key=lambda s: len(s.depends_on))

    def has_in_progress(self, task_graph: TaskGraph) -> bool:
        return any(s.status == SubtaskStatus.IN_PROGRESS for s in task_graph.subtasks)

    def is_complete(self, task_graph: TaskGraph) -> bool:
        return task_graph.all_terminal()

    def find_dependency_issues(self, task_graph: TaskGraph) -> list[DependencyError]:
        """Report missing and cyclic dependencies without changing the graph."""
        issues: list[DependencyError] = []
        known = task_graph.subtask_ids
        for subtask in task_graph.subtasks:
            missing = [d for d in subtask.depends_on if d not in known]
            if missing:
                issues.append(DependencyError(subtask.id, f"missing dependencies {missing}", missing))
            if subtask.id in subtask.depends_on:
                issues.append(DependencyError(subtask.id, "depends on itself", [subtask.id]))

        cycle = self.find_cycle(task_graph)
        if cycle and len(cycle) > 1:
            issues.append(DependencyError(cycle[0], f"dependency cycle {' -> '.join(cycle)}", cycle))
        return issues
