"""
Condition evaluation.

Conditions are evaluated against a flat context mapping. Evaluation is
pure: no I/O, no state, identical inputs always give identical results.
"""

import math
import re
from decimal import Decimal
from typing import Any, Dict, Mapping

from .errors import OperatorDisabledError
from .models import Condition, ConditionOperator


def parse_condition(raw: Any) -> Condition:
    """Validate a stored condition mapping.

    Raises ``pydantic.ValidationError`` for an empty field, an unknown
    operator or a non-mapping value.
    """
    return Condition.model_validate(raw)


def has_string_expression(conditions: Mapping[str, Any]) -> bool:
    """True if any entry of a conditions mapping is a raw string expression."""
    return any(isinstance(value, str) for value in conditions.values())


_SIGNED_INFINITY = {"Infinity": math.inf, "+Infinity": math.inf, "-Infinity": -math.inf}


def to_number(value: Any) -> float:
    """Coerce a value to float; anything non-numeric becomes NaN."""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, Decimal)):
        try:
            return float(value)
        except OverflowError:
            return math.inf if value > 0 else -math.inf
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if text in _SIGNED_INFINITY:
            return _SIGNED_INFINITY[text]
        # Digit separators and inf/nan spellings are not numeric literals here.
        if "_" in text or text.lower().lstrip("+-") in ("inf", "infinity", "nan"):
            return math.nan
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def to_text(value: Any) -> str:
    """Coerce a value to text for substring and pattern matching."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion between booleans and numbers."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


class ConditionEvaluator:
    """Evaluates single conditions against an evaluation context."""

    def __init__(self, allow_regex: bool = False):
        self.allow_regex = allow_regex

    def evaluate(self, condition: Condition, context: Dict[str, Any]) -> bool:
        """Evaluate one condition. Raises ``OperatorDisabledError`` for disabled operators."""
        actual = context.get(condition.field)
        expected = condition.value
        operator = condition.operator

        if operator is ConditionOperator.EQUALS:
            return strict_equals(actual, expected)
        if operator is ConditionOperator.NOT_EQUALS:
            return not strict_equals(actual, expected)
        if operator is ConditionOperator.GT:
            return to_number(actual) > to_number(expected)
        if operator is ConditionOperator.GTE:
            return to_number(actual) >= to_number(expected)
        if operator is ConditionOperator.LT:
            return to_number(actual) < to_number(expected)
        if operator is ConditionOperator.LTE:
            return to_number(actual) <= to_number(expected)
        if operator is ConditionOperator.INCLUDES:
            return to_text(expected) in to_text(actual)
        if operator is ConditionOperator.REGEX:
            if not self.allow_regex:
                raise OperatorDisabledError(operator.value)
            return re.search(to_text(expected), to_text(actual)) is not None

        raise ValueError(f"Unhandled condition operator: {operator!r}")
