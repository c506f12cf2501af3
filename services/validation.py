"""
Structural validation of automation rule definitions.

Runs before create and update.  Validation stops at the first problem found
and reports only that one, walking the definition in this order: rule type,
trigger, conditions, actions.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from models.schemas import ActionType, ConditionOperator, LogicalOperator, RuleType, TriggerEventType
from services.errors import FieldError

logger = logging.getLogger(__name__)

VALID_RULE_TYPES = {t.value for t in RuleType}
VALID_EVENT_TYPES = {e.value for e in TriggerEventType}
VALID_OPERATORS = {o.value for o in ConditionOperator}
VALID_LOGICAL_OPERATORS = {o.value for o in LogicalOperator}

# Action types accepted on create/update.  update_stage, update_priority and
# send_whatsapp may exist on stored rules but cannot be written.
VALID_ACTION_TYPES = {
    ActionType.UPDATE_STATUS.value,
    ActionType.ASSIGN_TO_USER.value,
    ActionType.UPDATE_FIELD.value,
    ActionType.SEND_NOTIFICATION.value,
    ActionType.SEND_EMAIL.value,
    ActionType.SEND_SMS.value,
    ActionType.CREATE_TASK.value,
    ActionType.WEBHOOK.value,
}


def _all_of(*keys: str) -> Callable[[Mapping[str, Any]], bool]:
    return lambda data: all(data.get(k) for k in keys)


def _any_of(*keys: str) -> Callable[[Mapping[str, Any]], bool]:
    return lambda data: any(data.get(k) for k in keys)


def _field_and_value(data: Mapping[str, Any]) -> bool:
    # value may be falsy (0, "", None) but the key must be present
    return bool(data.get("field")) and "value" in data


# action_type -> (check, message when the check fails)
_ACTION_DATA_RULES: Dict[str, tuple] = {
    "update_status": (_all_of("status_id"), "status_id is required for update_status action"),
    "assign_to_user": (
        _any_of("user_id", "team_id", "rule_id"),
        "user_id, team_id, or rule_id is required for assign_to_user action",
    ),
    "update_field": (_field_and_value, "field and value are required for update_field action"),
    "send_notification": (
        _any_of("template_id", "message"),
        "template_id or message is required for send_notification action",
    ),
    "send_email": (_any_of("template_id", "subject"), "template_id or subject is required for send_email action"),
    "send_sms": (_any_of("template_id", "message"), "template_id or message is required for send_sms action"),
    "create_task": (_all_of("title", "due_date"), "title and due_date are required for create_task action"),
    "webhook": (_all_of("url", "method"), "url and method are required for webhook action"),
}


def _validate_trigger(trigger: Mapping[str, Any]) -> Optional[FieldError]:
    event_type = trigger.get("event_type")
    if not event_type:
        return FieldError("trigger.event_type", "Trigger event type is required")
    if event_type not in VALID_EVENT_TYPES:
        return FieldError("trigger.event_type", f"Invalid event type: {event_type}")
    if event_type == TriggerEventType.SCHEDULED.value and not trigger.get("schedule"):
        return FieldError("trigger.schedule", "Schedule is required for scheduled event type")
    return None


def _validate_condition(index: int, condition: Mapping[str, Any]) -> Optional[FieldError]:
    if not condition.get("field") or not condition.get("operator"):
        return FieldError(f"conditions[{index}]", "Each condition must have field and operator")
    operator = condition["operator"]
    if operator not in VALID_OPERATORS:
        return FieldError(f"conditions[{index}].operator", f"Invalid operator: {operator}")
    logical = condition.get("logical_operator")
    if logical is not None and logical not in VALID_LOGICAL_OPERATORS:
        return FieldError(f"conditions[{index}].logical_operator", f"Invalid logical operator: {logical}")
    return None


def _validate_action(index: int, action: Mapping[str, Any]) -> Optional[FieldError]:
    action_type = action.get("action_type")
    if not action_type:
        return FieldError(f"actions[{index}].action_type", "Each action must have an action_type")
    if action_type not in VALID_ACTION_TYPES:
        return FieldError(f"actions[{index}].action_type", f"Invalid action type: {action_type}")

    action_data = action.get("action_data")
    if not action_data:
        return FieldError(f"actions[{index}].action_data", f"Action data is required for {action_type}")

    check, message = _ACTION_DATA_RULES[action_type]
    if not check(action_data):
        return FieldError(f"actions[{index}].action_data", message)
    return None


def _first_error(rule_input: Mapping[str, Any], partial: bool) -> Optional[FieldError]:
    rule_type = rule_input.get("rule_type")
    if rule_type is None:
        if not partial:
            return FieldError("rule_type", "Rule type is required")
    elif rule_type not in VALID_RULE_TYPES:
        return FieldError("rule_type", f"Invalid rule type: {rule_type}")

    trigger = rule_input.get("trigger")
    if trigger:
        error = _validate_trigger(trigger)
        if error:
            return error
    elif not partial:
        return FieldError("trigger", "Trigger is required")

    for index, condition in enumerate(rule_input.get("conditions") or []):
        error = _validate_condition(index, condition)
        if error:
            return error

    actions = rule_input.get("actions") or []
    if not actions and not partial:
        return FieldError("actions", "At least one action is required")
    for index, action in enumerate(actions):
        error = _validate_action(index, action)
        if error:
            return error

    return None


def validate_rule(rule_input: Mapping[str, Any], partial: bool = False) -> List[FieldError]:
    """
    Check a rule definition given as plain data.

    Args:
        rule_input: Rule fields as produced by ``model_dump()`` of a request body
        partial: True for updates, where absent sections are left unchecked

    Returns:
        An empty list when the definition is valid, otherwise a single-element
        list describing the first problem.
    """
    error = _first_error(rule_input, partial)
    if error is None:
        return []
    logger.info("Automation rule rejected: %s (%s)", error.message, error.field)
    return [error]
