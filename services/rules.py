"""
Rule evaluation engine.

Evaluates a rule's conditions against a flat record and picks the actions
the rule would request.  Both functions are pure: they read their arguments,
hold no state between calls and never raise for badly shaped conditions or
actions.

Condition format (JSON object):
  {"field": "status", "operator": "equals", "value": "open", "logical_operator": "AND"}

Conditions are folded left to right starting from True: an "OR" condition
can only widen the running verdict, any other logical operator narrows it.
There is no grouping or precedence.

Action format (JSON object):
  {"action_type": "send_email", "action_data": {"subject": "hi"}, "order": 0, "enabled": true}
"""

from __future__ import annotations

import logging
import math
from numbers import Number
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from models.schemas import ActionType, ConditionOperator, LogicalOperator

logger = logging.getLogger(__name__)

# Marks a field absent from the record; distinct from an explicit None.
MISSING = object()

_KNOWN_ACTION_TYPES = {a.value for a in ActionType}


# =====================================================================
# Value comparison helpers
# =====================================================================

def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, Number):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "list"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def strict_equals(a: Any, b: Any) -> bool:
    """Equality that never coerces between kinds (True != 1, "1" != 1)."""
    if _kind(a) != _kind(b):
        return False
    return a == b


def _number_text(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def _as_text(value: Any, nested: bool = False) -> str:
    """Text form of an operand as rule authors write it: 4.0 is "4", [1, 2] is "1,2"."""
    if value is None:
        # null inside a list renders as an empty slot
        return "" if nested else "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return _number_text(value)
    if isinstance(value, (list, tuple)):
        return ",".join(_as_text(item, nested=True) for item in value)
    if isinstance(value, Mapping):
        return "[object Object]"
    return str(value)


def _contains(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and _as_text(expected) in actual


def _not_contains(actual: Any, expected: Any) -> bool:
    # Non-string field values fail both contains and not_contains.
    return isinstance(actual, str) and _as_text(expected) not in actual


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _apply(actual: Any, expected: Any) -> bool:
        try:
            return bool(compare(actual, expected))
        except TypeError:
            return False
    return _apply


def _member_of(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple)) and any(strict_equals(item, actual) for item in expected)


def _not_member_of(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple)) and not any(strict_equals(item, actual) for item in expected)


_OPERATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: strict_equals,
    ConditionOperator.NOT_EQUALS: lambda a, b: not strict_equals(a, b),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: _not_contains,
    ConditionOperator.GREATER_THAN: _ordered(lambda a, b: a > b),
    ConditionOperator.LESS_THAN: _ordered(lambda a, b: a < b),
    ConditionOperator.IN: _member_of,
    ConditionOperator.NOT_IN: _not_member_of,
    ConditionOperator.EXISTS: lambda a, b: a is not None,
    ConditionOperator.NOT_EXISTS: lambda a, b: a is None,
}


def _parse_operator(raw: Any) -> Optional[ConditionOperator]:
    """Map a stored operator string to the enum; None means unknown."""
    try:
        return ConditionOperator(raw)
    except ValueError:
        return None


# =====================================================================
# Condition evaluation
# =====================================================================

def evaluate_condition(condition: Mapping[str, Any], record: Mapping[str, Any]) -> bool:
    """Evaluate one condition against a record, ignoring its logical operator."""
    if not isinstance(condition, Mapping):
        logger.warning("Rule condition is not a mapping, treating as unmet: %r", condition)
        return False

    field = condition.get("field")
    field_value = record.get(field, MISSING) if isinstance(field, str) else MISSING
    operator = _parse_operator(condition.get("operator"))

    if field_value is MISSING:
        return operator is ConditionOperator.NOT_EXISTS

    if operator is None:
        logger.warning("Rule uses unknown operator: %s", condition.get("operator"))
        return False

    return _OPERATORS[operator](field_value, condition.get("value"))


def evaluate_conditions(conditions: Optional[Sequence[Mapping[str, Any]]], record: Mapping[str, Any]) -> bool:
    """
    Fold ``conditions`` over ``record`` into a single verdict.

    An empty or missing condition list is always met.
    """
    met = True
    for condition in conditions or []:
        result = evaluate_condition(condition, record)
        logical = condition.get("logical_operator") if isinstance(condition, Mapping) else None
        if logical == LogicalOperator.OR.value:
            met = met or result
        else:
            met = met and result
    return met


# =====================================================================
# Action selection
# =====================================================================

def select_actions(actions: Optional[Sequence[Mapping[str, Any]]], conditions_met: bool) -> List[Dict[str, Any]]:
    """
    Return the enabled actions a rule would run, ordered by ``order``.

    Nothing is selected when the conditions were not met.  Disabled actions
    are dropped; ties on ``order`` keep their stored order.
    """
    if not conditions_met:
        return []

    selected = []
    for action in actions or []:
        if not isinstance(action, Mapping):
            logger.warning("Rule action is not a mapping, skipping: %r", action)
            continue
        if action.get("enabled") is False:
            continue

        action_type = action.get("action_type")
        if action_type not in _KNOWN_ACTION_TYPES:
            logger.warning("Rule action has unknown type: %s", action_type)

        selected.append({
            "action_type": action_type,
            "action_data": action.get("action_data"),
            "order": action.get("order") or 0,
        })

    return sorted(selected, key=lambda a: a["order"])
