"""Sandboxed condition expressions for condition nodes and edge guards.

Expressions are parsed with ``ast`` and only a small whitelist of node types
is accepted: comparisons between a variable reference and a literal, joined by
``and``/``or``/``not``. Nothing is ever passed to ``eval``.

    score >= 70
    status == "approved" and not flagged
    region in ["eu", "us"] or customer.tier == "gold"
"""

from __future__ import annotations

import ast
import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

Operator = Literal[
    "==", "!=", ">", "<", ">=", "<=", "in", "not_in", "contains", "starts_with", "ends_with"
]

_FIELD_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$")

_LITERAL_NAMES = {"true": True, "false": False, "null": None, "none": None}

_AST_OPERATORS: dict[type, str] = {
    ast.Eq: "==",
    ast.NotEq: "!=",
    ast.Gt: ">",
    ast.Lt: "<",
    ast.GtE: ">=",
    ast.LtE: "<=",
    ast.In: "in",
    ast.NotIn: "not_in",
}

# Operator to use when the literal is on the left-hand side
_MIRRORED = {">": "<", "<": ">", ">=": "<=", "<=": ">=", "==": "==", "!=": "!="}


class ConditionError(Exception):
    """Condition expression is malformed or uses unsupported syntax."""

    pass


class TransitionCondition(BaseModel):
    """
    Safe, declarative comparison of one variable against a literal.
    NO arbitrary code execution - only structured operators.
    """

    field: str  # Supports dotted notation: "customer.tier"
    operator: Operator
    value: str | int | float | bool | None | list[str | int | float | bool | None] = None

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        """Ensure field names are safe dot-separated identifiers."""
        if not _FIELD_PATTERN.match(v):
            raise ValueError(f"Invalid field name: {v}")
        return v

    @model_validator(mode="after")
    def check_value_type_for_operator(self) -> "TransitionCondition":
        """Ensure value type is compatible with the operator."""
        is_list_op = self.operator in {"in", "not_in"}
        is_list_val = isinstance(self.value, list)

        if is_list_op and not is_list_val:
            raise ValueError(f"Operator '{self.operator}' requires value to be a list.")
        if not is_list_op and is_list_val:
            raise ValueError(f"Operator '{self.operator}' does not support list values.")
        return self

    def evaluate(self, data: dict[str, Any]) -> bool:
        found, value = lookup_field(data, self.field)
        # A missing field never matches, so "status != 'failed'" is False when status is absent
        if not found:
            return False
        return compare(value, self.operator, self.value)


def lookup_field(data: Any, field: str) -> tuple[bool, Any]:
    """Resolve ``field`` against ``data``.

    Direct key match wins (including keys that contain dots), then dotted
    notation walks nested dicts.
    """
    if not isinstance(data, dict):
        return False, None
    if field in data:
        return True, data[field]
    if "." in field:
        current = data
        for part in field.split("."):
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]
        return True, current
    return False, None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _orderable(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return True
    return isinstance(left, str) and isinstance(right, str)


def compare(value: Any, operator: str, expected: Any) -> bool:
    """Apply ``operator`` with type safety.

    Type mismatches and invalid comparisons return False instead of raising.
    """
    try:
        if operator == "==":
            return value == expected
        elif operator == "!=":
            return value != expected
        elif operator in (">", "<", ">=", "<="):
            if not _orderable(value, expected):
                return False
            if operator == ">":
                return value > expected
            if operator == "<":
                return value < expected
            if operator == ">=":
                return value >= expected
            return value <= expected
        elif operator == "in":
            return value in expected
        elif operator == "not_in":
            return value not in expected
        elif operator == "contains":
            if isinstance(value, (dict, str, list)):
                return expected in value
            return False
        elif operator == "starts_with":
            return value.startswith(expected) if isinstance(value, str) else False
        elif operator == "ends_with":
            return value.endswith(expected) if isinstance(value, str) else False
        return False
    except (TypeError, AttributeError):
        return False


class ConditionExpression:
    """A parsed, reusable condition expression."""

    def __init__(self, source: str, tree: tuple):
        self.source = source
        self._tree = tree

    def evaluate(self, variables: dict[str, Any]) -> bool:
        return _evaluate(self._tree, variables)

    def __repr__(self) -> str:
        return f"ConditionExpression({self.source!r})"


def _evaluate(tree: tuple, variables: dict[str, Any]) -> bool:
    kind = tree[0]
    if kind == "and":
        return all(_evaluate(child, variables) for child in tree[1])
    if kind == "or":
        return any(_evaluate(child, variables) for child in tree[1])
    if kind == "not":
        return not _evaluate(tree[1], variables)
    if kind == "compare":
        return tree[1].evaluate(variables)
    if kind == "truthy":
        found, value = lookup_field(variables, tree[1])
        return found and bool(value)
    if kind == "const":
        return bool(tree[1])
    raise ConditionError(f"Unknown expression node: {kind}")


def _field_name(node: ast.AST) -> str | None:
    """Return the dotted variable name for Name/Attribute chains, else None."""
    if isinstance(node, ast.Name):
        if node.id.lower() in _LITERAL_NAMES:
            return None
        return node.id
    if isinstance(node, ast.Attribute):
        base = _field_name(node.value)
        if base is None:
            return None
        return f"{base}.{node.attr}"
    return None


def _literal(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (str, int, float, bool, type(None))):
        return node.value
    if isinstance(node, ast.Name) and node.id.lower() in _LITERAL_NAMES:
        return _LITERAL_NAMES[node.id.lower()]
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
        inner = _literal(node.operand)
        if _is_number(inner):
            return -inner
    if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
        return [_literal(item) for item in node.elts]
    raise ConditionError(f"Unsupported literal: {ast.dump(node)}")


def _build(node: ast.AST) -> tuple:
    if isinstance(node, ast.BoolOp):
        kind = "and" if isinstance(node.op, ast.And) else "or"
        return (kind, [_build(value) for value in node.values])

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
        return ("not", _build(node.operand))

    if isinstance(node, ast.Compare):
        if len(node.ops) != 1:
            raise ConditionError("Chained comparisons are not supported")
        op_type = type(node.ops[0])
        if op_type not in _AST_OPERATORS:
            raise ConditionError(f"Unsupported operator: {op_type.__name__}")
        operator = _AST_OPERATORS[op_type]
        left, right = node.left, node.comparators[0]

        field = _field_name(left)
        if field is not None:
            value = _literal(right)
        else:
            field = _field_name(right)
            if field is None:
                raise ConditionError("A comparison needs a variable on one side")
            value = _literal(left)
            if operator == "in":
                operator = "contains"
            elif operator == "not_in":
                return ("not", ("compare", _make_condition(field, "contains", value)))
            else:
                operator = _MIRRORED[operator]
        return ("compare", _make_condition(field, operator, value))

    field = _field_name(node)
    if field is not None:
        return ("truthy", field)

    return ("const", _literal(node))


def _make_condition(field: str, operator: str, value: Any) -> TransitionCondition:
    try:
        return TransitionCondition(field=field, operator=operator, value=value)
    except ValidationError as e:
        raise ConditionError(f"Invalid comparison on '{field}': {e}") from e


def parse_condition(source: str) -> ConditionExpression:
    """Parse a condition expression.

    Raises:
        ConditionError: If the expression is empty, not valid syntax, or uses
            anything besides comparisons, boolean operators and literals.
    """
    text = (source or "").strip()
    if not text:
        raise ConditionError("Condition expression is empty")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"Invalid condition syntax '{text}': {e.msg}") from e
    return ConditionExpression(text, _build(tree.body))


def evaluate_condition(source: str, variables: dict[str, Any]) -> bool:
    """Parse and evaluate a condition expression against ``variables``."""
    return parse_condition(source).evaluate(variables)
