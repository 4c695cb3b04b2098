"""Structured condition evaluation for ``logic`` nodes with subtype ``condition``.

Conditions never execute code. Missing fields and incompatible types make a
condition evaluate to False instead of raising.
"""

from __future__ import annotations

import logging
from typing import Any

from agentflow.core.graph_schema import TransitionCondition

logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_field(data: Any, field: str) -> Any:
    """Look up ``field`` in ``data``.

    Direct key match wins (so a key literally named "a.b" is found), then
    dotted traversal through nested mappings. Returns the ``_MISSING``
    sentinel when nothing matches.
    """
    if not isinstance(data, dict):
        return _MISSING
    if field in data:
        return data[field]
    if "." not in field:
        return _MISSING

    value = data
    for part in field.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def evaluate_condition(condition: TransitionCondition, data: Any) -> bool:
    """Evaluate a transition condition safely.

    Type mismatches and invalid comparisons return False instead of raising.
    """
    value = resolve_field(data, condition.field)

    # An absent field never matches, for every operator including "!="
    if value is _MISSING:
        logger.debug(f"Condition field '{condition.field}' not found in input")
        return False

    expected = condition.value
    try:
        if condition.operator == "==":
            return value == expected
        elif condition.operator == "!=":
            return value != expected
        elif condition.operator in (">", "<", ">=", "<="):
            if not _comparable(value, expected):
                return False
            if condition.operator == ">":
                return value > expected
            if condition.operator == "<":
                return value < expected
            if condition.operator == ">=":
                return value >= expected
            return value <= expected
        elif condition.operator == "in":
            return value in expected
        elif condition.operator == "not_in":
            return value not in expected
        elif condition.operator == "contains":
            # str, list and dict (key membership)
            if isinstance(value, (dict, str, list)):
                return expected in value
            return False
        elif condition.operator == "starts_with":
            return value.startswith(expected) if isinstance(value, str) else False
        elif condition.operator == "ends_with":
            return value.endswith(expected) if isinstance(value, str) else False
        else:
            return False
    except (TypeError, AttributeError):
        return False


def _comparable(value: Any, expected: Any) -> bool:
    # bool is an int subclass; never order booleans against numbers
    if isinstance(value, bool) or isinstance(expected, bool):
        return False
    numeric = (int, float)
    if isinstance(value, numeric) and isinstance(expected, numeric):
        return True
    return isinstance(value, str) and isinstance(expected, str)


def condition_output(condition: TransitionCondition, data: Any) -> dict[str, Any]:
    """Node output for a condition: the result plus the branch handle to follow."""
    result = evaluate_condition(condition, data)
    return {"condition_result": result, "branch": "true" if result else "false"}
