"""Tests for sandboxed condition expressions."""

import pytest
from pydantic import ValidationError

from flowcore.core.conditions import (
    ConditionError,
    TransitionCondition,
    compare,
    evaluate_condition,
    lookup_field,
    parse_condition,
)


class TestTransitionCondition:
    def test_simple_equality(self):
        cond = TransitionCondition(field="status", operator="==", value="approved")
        assert cond.evaluate({"status": "approved"}) is True
        assert cond.evaluate({"status": "rejected"}) is False

    def test_missing_field_never_matches(self):
        cond = TransitionCondition(field="status", operator="!=", value="failed")
        assert cond.evaluate({}) is False

    def test_dotted_field(self):
        cond = TransitionCondition(field="customer.tier", operator="==", value="gold")
        assert cond.evaluate({"customer": {"tier": "gold"}}) is True

    def test_invalid_field_name_rejected(self):
        with pytest.raises(ValidationError):
            TransitionCondition(field="__import__('os')", operator="==", value=1)

    def test_list_operator_requires_list(self):
        with pytest.raises(ValidationError):
            TransitionCondition(field="region", operator="in", value="eu")

    def test_scalar_operator_rejects_list(self):
        with pytest.raises(ValidationError):
            TransitionCondition(field="region", operator="==", value=["eu"])


class TestLookupAndCompare:
    def test_direct_key_with_dot_wins(self):
        assert lookup_field({"a.b": 1, "a": {"b": 2}}, "a.b") == (True, 1)

    def test_nested_lookup(self):
        assert lookup_field({"a": {"b": 2}}, "a.b") == (True, 2)

    def test_missing_nested(self):
        assert lookup_field({"a": {}}, "a.b") == (False, None)

    def test_type_mismatch_returns_false(self):
        assert compare("80", ">=", 70) is False
        assert compare(None, "<", 5) is False

    def test_bool_is_not_a_number(self):
        assert compare(True, ">", 0) is False

    def test_string_operators(self):
        assert compare("hello world", "starts_with", "hello") is True
        assert compare("hello world", "ends_with", "world") is True
        assert compare(42, "starts_with", "4") is False
        assert compare(["a", "b"], "contains", "a") is True


class TestParseCondition:
    @pytest.mark.parametrize(
        "expression,variables,expected",
        [
            ("score >= 70", {"score": 80}, True),
            ("score >= 70", {"score": 50}, False),
            ("score >= 70", {"score": "80"}, False),
            ("70 <= score", {"score": 70}, True),
            ('status == "approved" and not flagged', {"status": "approved", "flagged": False}, True),
            ('status == "approved" and not flagged', {"status": "approved", "flagged": True}, False),
            ('region in ["eu", "us"] or customer.tier == "gold"', {"region": "apac", "customer": {"tier": "gold"}}, True),
            ('region not in ["eu", "us"]', {"region": "eu"}, False),
            ('"vip" in tags', {"tags": ["vip", "new"]}, True),
            ('"vip" not in tags', {"tags": ["new"]}, True),
            ("flagged", {"flagged": 1}, True),
            ("flagged", {}, False),
            ("true", {}, True),
            ("x == null", {"x": None}, True),
            ("delta > -5", {"delta": -1}, True),
        ],
    )
    def test_evaluate(self, expression, variables, expected):
        assert evaluate_condition(expression, variables) is expected

    def test_parsed_expression_is_reusable(self):
        expr = parse_condition("count < 3")
        assert expr.evaluate({"count": 1}) is True
        assert expr.evaluate({"count": 5}) is False

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "   ",
            "score >=",
            "__import__('os').system('ls')",
            "a < b < c",
            "x == y",
            "len(items) > 0",
            "x + 1 > 2",
            "x is None",
        ],
    )
    def test_rejects_unsupported_syntax(self, expression):
        with pytest.raises(ConditionError):
            parse_condition(expression)
