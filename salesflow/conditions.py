"""Condition evaluation for workflow branches, waits and trigger filters.

Expressions are JSON trees of two shapes:

* comparisons: ``{"field": "order.total", "operator": "gt", "value": 100}``
* combinators: ``{"and": [...]}``, ``{"or": [...]}``, ``{"not": {...}}``

A comparison whose field is absent from the payload is *unknown*. Unknown
propagates through ``not`` and is resolved by ``and``/``or`` with
three-valued logic; an unknown result at the root evaluates to ``False`` so
partial payloads fail closed.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

from .exceptions import EvaluationError

logger = logging.getLogger(__name__)


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


OPERATOR_ALIASES = {
    "equals": Operator.EQ,
    "not_equals": Operator.NEQ,
    "greater_than": Operator.GT,
    "less_than": Operator.LT,
}


class Comparison(BaseModel):
    """Compare the value at ``field`` (dotted path) against ``value``."""

    model_config = ConfigDict(frozen=True)

    field: str
    operator: Operator
    value: Any = None


class AllOf(BaseModel):
    model_config = ConfigDict(frozen=True)

    children: List["Expression"]


class AnyOf(BaseModel):
    model_config = ConfigDict(frozen=True)

    children: List["Expression"]


class Negation(BaseModel):
    model_config = ConfigDict(frozen=True)

    child: "Expression"


Expression = Union[Comparison, AllOf, AnyOf, Negation]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Negation.model_rebuild()


class _Missing:
    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<missing>"


MISSING = _Missing()


def parse_expression(raw: Any) -> Expression:
    """Build an expression tree from its JSON form.

    Raises:
        EvaluationError: If ``raw`` is not a well-formed expression.
    """
    if isinstance(raw, (Comparison, AllOf, AnyOf, Negation)):
        return raw
    if not isinstance(raw, Mapping):
        raise EvaluationError(f"Expression must be an object, got {type(raw).__name__}")

    if "and" in raw or "or" in raw:
        key = "and" if "and" in raw else "or"
        children = raw[key]
        if not isinstance(children, list) or not children:
            raise EvaluationError(f"'{key}' requires a non-empty list of expressions")
        parsed = [parse_expression(child) for child in children]
        return AllOf(children=parsed) if key == "and" else AnyOf(children=parsed)

    if "not" in raw:
        return Negation(child=parse_expression(raw["not"]))

    field = raw.get("field")
    if not isinstance(field, str) or not field:
        raise EvaluationError("Comparison requires a non-empty 'field'")
    op_name = raw.get("operator")
    if not isinstance(op_name, str):
        raise EvaluationError(f"Comparison on '{field}' requires an 'operator'")
    try:
        operator = OPERATOR_ALIASES.get(op_name) or Operator(op_name)
    except ValueError:
        raise EvaluationError(f"Unknown operator '{op_name}'") from None
    value = raw.get("value")
    if operator is Operator.IN and not isinstance(value, list):
        raise EvaluationError(f"Operator 'in' on '{field}' requires a list value")
    return Comparison(field=field, operator=operator, value=value)


def resolve_field(payload: Any, path: str) -> Any:
    """Walk ``payload`` by dotted ``path``; return ``MISSING`` when absent."""
    current = payload
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, list) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    if _is_number(left) or _is_number(right):
        l_num, r_num = _to_number(left), _to_number(right)
        if l_num is not None and r_num is not None:
            return l_num == r_num
    return left == right


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        if isinstance(item, str):
            return item in container
        if _is_number(item):
            return str(item) in container
        return False
    if isinstance(container, list):
        return any(_equals(element, item) for element in container)
    if isinstance(container, Mapping):
        return isinstance(item, str) and item in container
    return False


def _compare(expr: Comparison, payload: Mapping[str, Any]) -> Optional[bool]:
    actual = resolve_field(payload, expr.field)
    op = expr.operator

    if op is Operator.EXISTS:
        return actual is not MISSING and actual is not None
    if op is Operator.NOT_EXISTS:
        return actual is MISSING or actual is None
    if actual is MISSING:
        return None

    if op is Operator.EQ:
        return _equals(actual, expr.value)
    if op is Operator.NEQ:
        return not _equals(actual, expr.value)
    if op in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
        left, right = _to_number(actual), _to_number(expr.value)
        if left is None or right is None:
            return False
        if op is Operator.GT:
            return left > right
        if op is Operator.GTE:
            return left >= right
        if op is Operator.LT:
            return left < right
        return left <= right
    if op is Operator.CONTAINS:
        return _contains(actual, expr.value)
    if op is Operator.NOT_CONTAINS:
        return not _contains(actual, expr.value)
    if op is Operator.IN:
        return any(_equals(actual, candidate) for candidate in expr.value)
    raise EvaluationError(f"Unsupported operator '{op}'")  # pragma: no cover


def _evaluate(expr: Expression, payload: Mapping[str, Any]) -> Optional[bool]:
    if isinstance(expr, Comparison):
        return _compare(expr, payload)
    if isinstance(expr, Negation):
        inner = _evaluate(expr.child, payload)
        return None if inner is None else not inner
    if isinstance(expr, AllOf):
        result: Optional[bool] = True
        for child in expr.children:
            value = _evaluate(child, payload)
            if value is False:
                return False
            if value is None:
                result = None
        return result
    if isinstance(expr, AnyOf):
        result = False
        for child in expr.children:
            value = _evaluate(child, payload)
            if value is True:
                return True
            if value is None:
                result = None
        return result
    raise EvaluationError(f"Unsupported expression node {type(expr).__name__}")


def evaluate(expression: Any, payload: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``payload``.

    Never raises: malformed expressions are logged and evaluate to ``False``.
    """
    try:
        parsed = parse_expression(expression)
        return _evaluate(parsed, payload) is True
    except EvaluationError as exc:
        logger.warning(f"Condition treated as false: {exc}")
        return False


def validate_expression(expression: Any) -> None:
    """Raise :class:`EvaluationError` if ``expression`` is malformed."""
    parse_expression(expression)
