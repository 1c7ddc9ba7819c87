from __future__ import annotations

import pytest

from docflow.engine.workflow.expressions import (
    ExpressionError,
    UnresolvedNameError,
    evaluate_condition,
    evaluate_expression,
    validate_expression,
)


def test_comparisons_and_boolean_logic() -> None:
    ctx = {"retries": 2, "document": {"status": "draft"}}

    assert evaluate_condition("retries < 3 and document.status != 'approved'", ctx) is True
    assert evaluate_condition("retries >= 3 or document.status == 'approved'", ctx) is False
    assert evaluate_condition("not (retries > 5)", ctx) is True


def test_json_style_operators_and_literals() -> None:
    ctx = {"approved": False, "owner": None}

    assert evaluate_condition("approved == false && owner == null", ctx) is True
    assert evaluate_condition("approved || true", ctx) is True
    assert evaluate_condition("!approved && !(owner != null)", ctx) is True


def test_operator_aliases_inside_strings_are_literal() -> None:
    ctx = {"status": "a && b", "note": "urgent || !late"}

    assert evaluate_condition('status == "a && b"', ctx) is True
    assert evaluate_condition("note == 'urgent || !late' && status != 'x'", ctx) is True
    assert evaluate_expression('"it\\"s && fine"', {}) == 'it"s && fine'


def test_subscripts_membership_and_len() -> None:
    ctx = {"items": [1, 2, 3], "tags": {"urgent": True}}

    assert evaluate_expression("items[0]", ctx) == 1
    assert evaluate_condition("2 in items", ctx) is True
    assert evaluate_condition("len(items) == 3", ctx) is True
    assert evaluate_condition("tags['urgent']", ctx) is True


def test_chained_comparison() -> None:
    assert evaluate_condition("0 < n < 10", {"n": 5}) is True
    assert evaluate_condition("0 < n < 10", {"n": 12}) is False


def test_unknown_names_raise_unresolved() -> None:
    with pytest.raises(UnresolvedNameError) as excinfo:
        evaluate_expression("missing > 1", {})
    assert excinfo.value.name == "missing"

    with pytest.raises(UnresolvedNameError):
        evaluate_expression("document.owner", {"document": {}})


def test_function_calls_other_than_len_are_rejected() -> None:
    with pytest.raises(ExpressionError):
        evaluate_expression("open('x')", {})

    assert validate_expression("__import__('os').system('ls')")
    assert validate_expression("[x for x in items]")
    assert validate_expression("len(items) > 0") == []


def test_invalid_syntax_and_empty_expressions() -> None:
    assert validate_expression("") == ["Expression cannot be empty"]
    assert validate_expression("a >")
    with pytest.raises(ExpressionError, match="too long"):
        evaluate_expression("a" * 501, {})
