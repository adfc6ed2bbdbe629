"""Tests for the workflow registry and workflow file loading."""

import json

import pytest
import yaml

from flowcore.core.graph_schema import GraphError, Node, WorkflowGraph
from flowcore.core.registry import WorkflowRegistry, load_workflow_file

WORKFLOW_DATA = {
    "id": "onboarding",
    "name": "Customer onboarding",
    "description": "Welcome new customers",
    "tags": ["sales"],
    "nodes": [
        {"id": "t", "type": "trigger"},
        {"id": "a", "type": "action", "config": {"action": "welcome"}},
    ],
    "edges": [{"id": "e1", "source": "t", "target": "a"}],
}


class TestLoadWorkflowFile:
    def test_yaml(self, tmp_path):
        path = tmp_path / "flow.yaml"
        path.write_text(yaml.safe_dump(WORKFLOW_DATA))
        workflow = load_workflow_file(path)
        assert workflow.id == "onboarding"
        assert len(workflow.nodes) == 2

    def test_json(self, tmp_path):
        path = tmp_path / "flow.json"
        path.write_text(json.dumps(WORKFLOW_DATA))
        assert load_workflow_file(path).edges[0].target == "a"

    def test_missing_file(self, tmp_path):
        with pytest.raises(GraphError, match="Cannot read"):
            load_workflow_file(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "flow.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(GraphError, match="mapping"):
            load_workflow_file(path)

    def test_schema_error(self, tmp_path):
        path = tmp_path / "flow.yaml"
        path.write_text(yaml.safe_dump({"id": "x"}))
        with pytest.raises(GraphError, match="Invalid workflow"):
            load_workflow_file(path)


class TestWorkflowRegistry:
    def test_register_and_get(self):
        registry = WorkflowRegistry()
        workflow = WorkflowGraph.model_validate(WORKFLOW_DATA)
        registry.register_workflow(workflow)
        assert registry.get_workflow("onboarding") is workflow

    def test_invalid_workflow_rejected(self):
        registry = WorkflowRegistry()
        with pytest.raises(GraphError):
            registry.register_workflow(WorkflowGraph(id="empty", nodes=[]))
        assert registry.get_workflow("empty") is None

    def test_update_requires_existing(self):
        registry = WorkflowRegistry()
        with pytest.raises(KeyError):
            registry.update_workflow(WorkflowGraph.model_validate(WORKFLOW_DATA))

    def test_remove(self):
        registry = WorkflowRegistry()
        registry.register_workflow(WorkflowGraph.model_validate(WORKFLOW_DATA))
        assert registry.remove_workflow("onboarding") is True
        assert registry.remove_workflow("onboarding") is False

    def test_list_filters(self):
        registry = WorkflowRegistry()
        registry.register_workflow(WorkflowGraph.model_validate(WORKFLOW_DATA))
        registry.register_workflow(
            WorkflowGraph(id="other", name="Other", nodes=[Node(id="t", type="trigger")])
        )
        assert [w.id for w in registry.list_workflows(tag="sales")] == ["onboarding"]
        assert [w.id for w in registry.list_workflows(search="WELCOME")] == ["onboarding"]
        assert len(registry.list_workflows()) == 2

    def test_database_backed(self, test_db):
        WorkflowRegistry(test_db).register_workflow(WorkflowGraph.model_validate(WORKFLOW_DATA))
        fresh = WorkflowRegistry(test_db)
        assert fresh.get_workflow("onboarding").name == "Customer onboarding"
        assert [w.id for w in fresh.list_workflows()] == ["onboarding"]
