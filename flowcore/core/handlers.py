"""Node handler registry.

Maps node types to the handlers that execute them. Default handlers cover the
built-in node types; callers register extra handlers (or overrides) at runtime
without touching the engine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from flowcore.core.conditions import parse_condition
from flowcore.core.graph_schema import (
    ActionConfig,
    AgentConfig,
    ConditionConfig,
    Node,
    NodeType,
)

logger = logging.getLogger(__name__)


class UnsupportedNodeTypeError(Exception):
    """No handler is registered for a node type."""

    pass


class HandlerExecutionError(Exception):
    """A node handler raised while executing a node."""

    def __init__(self, node_id: str, node_type: str, cause: BaseException):
        self.node_id = node_id
        self.node_type = node_type
        self.cause = cause
        super().__init__(f"Node '{node_id}' ({node_type}) failed: {cause}")


def _type_name(node_type: NodeType | str) -> str:
    return node_type.value if isinstance(node_type, NodeType) else str(node_type)


@runtime_checkable
class NodeHandler(Protocol):
    """Capability contract for node handlers."""

    def can_handle(self, node_type: str) -> bool: ...

    async def execute(self, node: Node, inputs: dict[str, Any]) -> dict[str, Any]: ...


class TriggerHandler:
    """Starts a run. Inputs flow through unchanged."""

    def can_handle(self, node_type: str) -> bool:
        return _type_name(node_type) == NodeType.TRIGGER.value

    async def execute(self, node: Node, inputs: dict[str, Any]) -> dict[str, Any]:
        return {"triggered": True}


class ActionHandler:
    def can_handle(self, node_type: str) -> bool:
        return _type_name(node_type) == NodeType.ACTION.value

    async def execute(self, node: Node, inputs: dict[str, Any]) -> dict[str, Any]:
        config = ActionConfig.model_validate(node.config)
        return {
            "action_performed": True,
            "action_name": config.action or node.display_name,
            "timestamp": datetime.now(UTC).isoformat(),
        }


class ConditionHandler:
    """Evaluates the node's condition against the accumulated variables.

    Emits ``path`` ('true'/'false') which the engine uses to choose the
    'yes'/'no' edge.
    """

    def can_handle(self, node_type: str) -> bool:
        return _type_name(node_type) == NodeType.CONDITION.value

    async def execute(self, node: Node, inputs: dict[str, Any]) -> dict[str, Any]:
        config = ConditionConfig.model_validate(node.config)
        if config.rule is not None:
            result = config.rule.evaluate(inputs)
        elif config.condition is not None:
            result = parse_condition(config.condition).evaluate(inputs)
        else:
            raise ValueError(f"Condition node '{node.id}' has no condition configured")

        logger.debug(f"Condition '{node.id}' evaluated to {result}")
        return {
            "condition_result": result,
            "condition_name": node.display_name,
            "path": "true" if result else "false",
        }


class AgentHandler:
    """Placeholder agent handler; real agents are registered by the host application."""

    def can_handle(self, node_type: str) -> bool:
        return _type_name(node_type) == NodeType.AGENT.value

    async def execute(self, node: Node, inputs: dict[str, Any]) -> dict[str, Any]:
        config = AgentConfig.model_validate(node.config)
        agent_id = config.agent_id or node.id
        return {
            "agent_result": f"Result from agent {agent_id}",
            "agent_name": node.display_name,
            "completed": True,
        }


class FunctionNodeHandler:
    """Adapts a plain or async callable ``func(node, inputs) -> dict`` to a handler.

    Plain callables run in a worker thread so they do not block the event loop.
    """

    def __init__(self, node_type: NodeType | str, func: Callable[[Node, dict[str, Any]], Any]):
        self.node_type = _type_name(node_type)
        self.func = func

    def can_handle(self, node_type: str) -> bool:
        return _type_name(node_type) == self.node_type

    async def execute(self, node: Node, inputs: dict[str, Any]) -> dict[str, Any]:
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(node, inputs)
        else:
            result = await asyncio.to_thread(self.func, node, inputs)
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise TypeError(
                f"Handler for '{self.node_type}' returned {type(result).__name__}, expected dict"
            )
        return result


def default_handlers() -> list[NodeHandler]:
    return [TriggerHandler(), ActionHandler(), ConditionHandler(), AgentHandler()]


class NodeHandlerRegistry:
    """Pluggable dispatch table from node type to handler.

    Handlers registered later take precedence, so a runtime registration
    overrides a default for the same type.
    """

    def __init__(self, handlers: list[NodeHandler] | None = None, include_defaults: bool = True):
        self._lock = threading.RLock()
        self._handlers: list[NodeHandler] = []
        if include_defaults:
            self._handlers.extend(default_handlers())
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: NodeHandler) -> None:
        if not isinstance(handler, NodeHandler):
            raise TypeError(f"{type(handler).__name__} does not implement NodeHandler")
        with self._lock:
            self._handlers.append(handler)

    def register_function(
        self, node_type: NodeType | str, func: Callable[[Node, dict[str, Any]], Any]
    ) -> FunctionNodeHandler:
        handler = FunctionNodeHandler(node_type, func)
        self.register(handler)
        return handler

    def unregister(self, node_type: NodeType | str) -> bool:
        """Remove every handler for ``node_type``. Returns True if any were removed."""
        name = _type_name(node_type)
        with self._lock:
            before = len(self._handlers)
            self._handlers = [h for h in self._handlers if not h.can_handle(name)]
            removed = len(self._handlers) < before
        if removed:
            logger.info(f"Unregistered handlers for node type '{name}'")
        return removed

    def resolve(self, node_type: NodeType | str) -> NodeHandler | None:
        name = _type_name(node_type)
        with self._lock:
            for handler in reversed(self._handlers):
                if handler.can_handle(name):
                    return handler
        return None

    def require(self, node_type: NodeType | str) -> NodeHandler:
        handler = self.resolve(node_type)
        if handler is None:
            raise UnsupportedNodeTypeError(f"No handler registered for node type '{_type_name(node_type)}'")
        return handler

    def can_handle(self, node_type: NodeType | str) -> bool:
        return self.resolve(node_type) is not None
