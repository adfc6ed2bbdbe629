"""Workflow registry: the provider the engine loads workflow graphs from."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from flowcore.core.graph_schema import GraphError, WorkflowGraph
from flowcore.core.state import Database

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkflowProvider(Protocol):
    def get_workflow(self, workflow_id: str) -> WorkflowGraph | None: ...


def load_workflow_file(path: str | Path) -> WorkflowGraph:
    """Load a workflow definition from a YAML or JSON file.

    Raises:
        GraphError: If the file cannot be parsed or does not describe a workflow.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise GraphError(f"Cannot read workflow file {path}: {e}") from e

    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise GraphError(f"Cannot parse workflow file {path}: {e}") from e

    if not isinstance(data, dict):
        raise GraphError(f"Workflow file {path} must contain a mapping")

    try:
        return WorkflowGraph.model_validate(data)
    except ValidationError as e:
        raise GraphError(f"Invalid workflow definition in {path}: {e}") from e


class WorkflowRegistry:
    """In-memory workflow catalogue, optionally backed by the SQLite database.

    Workflows are validated on registration; an invalid graph is never stored.
    """

    def __init__(self, db: Database | None = None):
        self.db = db
        self._lock = threading.RLock()
        self._workflows: dict[str, WorkflowGraph] = {}

    def _validate(self, workflow: WorkflowGraph) -> None:
        errors = workflow.validate_graph()
        if errors:
            raise GraphError(f"Workflow '{workflow.id}' is invalid: {'; '.join(errors)}")

    def register_workflow(self, workflow: WorkflowGraph) -> WorkflowGraph:
        self._validate(workflow)
        with self._lock:
            if workflow.id in self._workflows:
                logger.warning(f"Workflow '{workflow.id}' already registered, replacing it")
            self._workflows[workflow.id] = workflow
        if self.db is not None:
            self.db.save_workflow(workflow)
        return workflow

    def update_workflow(self, workflow: WorkflowGraph) -> WorkflowGraph:
        if self.get_workflow(workflow.id) is None:
            raise KeyError(f"Workflow '{workflow.id}' is not registered")
        return self.register_workflow(workflow)

    def remove_workflow(self, workflow_id: str) -> bool:
        with self._lock:
            removed = self._workflows.pop(workflow_id, None) is not None
        if self.db is not None:
            removed = self.db.delete_workflow(workflow_id) or removed
        return removed

    def get_workflow(self, workflow_id: str) -> WorkflowGraph | None:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
        if workflow is None and self.db is not None:
            workflow = self.db.get_workflow(workflow_id)
            if workflow is not None:
                with self._lock:
                    self._workflows[workflow_id] = workflow
        return workflow

    def list_workflows(self, tag: str | None = None, search: str | None = None) -> list[WorkflowGraph]:
        """List workflows, optionally filtered by tag and a case-insensitive text search."""
        with self._lock:
            workflows = dict(self._workflows)
        if self.db is not None:
            for workflow in self.db.list_workflows():
                workflows.setdefault(workflow.id, workflow)

        result = list(workflows.values())
        if tag is not None:
            result = [w for w in result if tag in w.tags]
        if search:
            needle = search.lower()
            result = [
                w
                for w in result
                if needle in w.name.lower()
                or needle in (w.description or "").lower()
                or needle in w.id.lower()
            ]
        return result

    def load_file(self, path: str | Path) -> WorkflowGraph:
        return self.register_workflow(load_workflow_file(path))
