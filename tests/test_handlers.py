"""Tests for the node handler registry and default handlers."""

import asyncio

import pytest

from flowcore.core.graph_schema import Node, NodeType
from flowcore.core.handlers import (
    ActionHandler,
    AgentHandler,
    ConditionHandler,
    FunctionNodeHandler,
    NodeHandlerRegistry,
    TriggerHandler,
    UnsupportedNodeTypeError,
)


class TestDefaultHandlers:
    def test_trigger(self):
        result = asyncio.run(TriggerHandler().execute(Node(id="t", type="trigger"), {}))
        assert result == {"triggered": True}

    def test_action(self):
        node = Node(id="a", type="action", label="Send mail", config={"action": "send_email"})
        result = asyncio.run(ActionHandler().execute(node, {}))
        assert result["action_performed"] is True
        assert result["action_name"] == "send_email"
        assert "timestamp" in result

    def test_action_name_defaults_to_label(self):
        node = Node(id="a", type="action", label="Send mail")
        result = asyncio.run(ActionHandler().execute(node, {}))
        assert result["action_name"] == "Send mail"

    def test_condition_expression(self):
        node = Node(id="c", type="condition", config={"condition": "score >= 70"})
        result = asyncio.run(ConditionHandler().execute(node, {"score": 80}))
        assert result == {"condition_result": True, "condition_name": "c", "path": "true"}

    def test_condition_rule(self):
        node = Node(
            id="c",
            type="condition",
            config={"rule": {"field": "region", "operator": "in", "value": ["eu"]}},
        )
        result = asyncio.run(ConditionHandler().execute(node, {"region": "us"}))
        assert result["path"] == "false"

    def test_condition_without_config_raises(self):
        with pytest.raises(ValueError):
            asyncio.run(ConditionHandler().execute(Node(id="c", type="condition"), {}))

    def test_agent(self):
        node = Node(id="g", type="agent", config={"agent_id": "researcher"})
        result = asyncio.run(AgentHandler().execute(node, {}))
        assert result["agent_result"] == "Result from agent researcher"
        assert result["completed"] is True


class TestFunctionNodeHandler:
    def test_sync_function(self):
        handler = FunctionNodeHandler("webhook", lambda node, inputs: {"seen": inputs["x"]})
        assert handler.can_handle("webhook")
        assert asyncio.run(handler.execute(Node(id="w", type="webhook"), {"x": 1})) == {"seen": 1}

    def test_async_function(self):
        async def func(node, inputs):
            return {"node": node.id}

        handler = FunctionNodeHandler(NodeType.ACTION, func)
        assert asyncio.run(handler.execute(Node(id="a", type="action"), {})) == {"node": "a"}

    def test_none_becomes_empty_dict(self):
        handler = FunctionNodeHandler("noop", lambda node, inputs: None)
        assert asyncio.run(handler.execute(Node(id="n", type="noop"), {})) == {}

    def test_non_dict_result_raises(self):
        handler = FunctionNodeHandler("bad", lambda node, inputs: 42)
        with pytest.raises(TypeError):
            asyncio.run(handler.execute(Node(id="n", type="bad"), {}))


class TestNodeHandlerRegistry:
    def test_defaults_registered(self):
        registry = NodeHandlerRegistry()
        for node_type in NodeType:
            assert registry.can_handle(node_type)

    def test_without_defaults(self):
        registry = NodeHandlerRegistry(include_defaults=False)
        assert not registry.can_handle("action")

    def test_later_registration_overrides(self):
        registry = NodeHandlerRegistry()
        custom = registry.register_function("action", lambda node, inputs: {"custom": True})
        assert registry.resolve(NodeType.ACTION) is custom

    def test_unregister(self):
        registry = NodeHandlerRegistry()
        registry.register_function("action", lambda node, inputs: {})
        assert registry.unregister("action") is True
        assert registry.resolve("action") is None
        assert registry.unregister("action") is False

    def test_require_unknown_type(self):
        with pytest.raises(UnsupportedNodeTypeError, match="webhook"):
            NodeHandlerRegistry().require("webhook")

    def test_register_rejects_non_handler(self):
        with pytest.raises(TypeError):
            NodeHandlerRegistry().register(object())
