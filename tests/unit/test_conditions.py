"""Condition evaluator tests."""

import pytest

from salesflow.conditions import evaluate, resolve_field, validate_expression, MISSING
from salesflow.exceptions import EvaluationError


ORDER = {
    "total": 150,
    "currency": "EUR",
    "status": "paid",
    "customer": {"email": "ann@example.com", "tags": ["vip", "newsletter"]},
    "items": [{"sku": "A-1", "qty": 2}],
    "note": None,
}


@pytest.mark.parametrize(
    "expression, expected",
    [
        ({"field": "total", "operator": "gt", "value": 100}, True),
        ({"field": "total", "operator": "lte", "value": "150"}, True),
        ({"field": "status", "operator": "eq", "value": "paid"}, True),
        ({"field": "status", "operator": "eq", "value": "Paid"}, False),
        ({"field": "status", "operator": "neq", "value": "refunded"}, True),
        ({"field": "customer.tags", "operator": "contains", "value": "vip"}, True),
        ({"field": "customer.email", "operator": "contains", "value": "@example"}, True),
        ({"field": "customer.tags", "operator": "not_contains", "value": "b2b"}, True),
        ({"field": "currency", "operator": "in", "value": ["EUR", "USD"]}, True),
        ({"field": "items.0.sku", "operator": "eq", "value": "A-1"}, True),
        ({"field": "items.0.qty", "operator": "gte", "value": 3}, False),
        ({"field": "note", "operator": "exists"}, False),
        ({"field": "coupon", "operator": "not_exists"}, True),
    ],
)
def test_comparisons(expression, expected):
    assert evaluate(expression, ORDER) is expected


def test_numeric_strings_are_coerced():
    assert evaluate({"field": "total", "operator": "gt", "value": 99}, {"total": "100.5"})
    assert not evaluate({"field": "total", "operator": "gt", "value": 99}, {"total": "n/a"})


def test_operator_aliases():
    assert evaluate({"field": "status", "operator": "equals", "value": "paid"}, ORDER)
    assert evaluate({"field": "total", "operator": "greater_than", "value": 10}, ORDER)
    assert evaluate({"field": "total", "operator": "less_than", "value": 1000}, ORDER)
    assert evaluate({"field": "status", "operator": "not_equals", "value": "new"}, ORDER)


@pytest.mark.parametrize(
    "expression",
    [
        {"field": "missing", "operator": "eq", "value": 1},
        {"field": "missing", "operator": "neq", "value": 1},
        {"field": "customer.phone", "operator": "contains", "value": "+1"},
        {"not": {"field": "missing", "operator": "eq", "value": 1}},
        {"and": [{"field": "total", "operator": "gt", "value": 1}, {"field": "missing", "operator": "eq", "value": 1}]},
        {"or": [{"field": "missing", "operator": "eq", "value": 1}, {"field": "total", "operator": "lt", "value": 1}]},
    ],
)
def test_absent_fields_fail_closed(expression):
    assert evaluate(expression, ORDER) is False


def test_three_valued_combinators():
    unknown = {"field": "missing", "operator": "eq", "value": 1}
    true = {"field": "total", "operator": "gt", "value": 1}
    false = {"field": "total", "operator": "lt", "value": 1}

    assert evaluate({"or": [unknown, true]}, ORDER) is True
    assert evaluate({"and": [unknown, false]}, ORDER) is False
    assert evaluate({"not": {"and": [unknown, false]}}, ORDER) is True


def test_malformed_expressions_evaluate_false():
    assert evaluate({"field": "total", "operator": "between", "value": 1}, ORDER) is False
    assert evaluate({"and": []}, ORDER) is False
    assert evaluate("total > 1", ORDER) is False


def test_validate_expression_rejects_malformed():
    with pytest.raises(EvaluationError):
        validate_expression({"operator": "eq", "value": 1})
    with pytest.raises(EvaluationError):
        validate_expression({"field": "currency", "operator": "in", "value": "EUR"})
    validate_expression({"or": [{"field": "a", "operator": "exists"}]})


def test_resolve_field_reports_missing():
    assert resolve_field(ORDER, "customer.email") == "ann@example.com"
    assert resolve_field(ORDER, "items.5.sku") is MISSING
    assert resolve_field(ORDER, "total.amount") is MISSING
