"""
Automation rule service.

CRUD for rule documents plus the two ways of running a rule:

- ``test_rule``: dry run against caller-supplied sample data, no side effects.
- ``execute_rule``: manual trigger against a target entity; records the
  execution in the rule analytics and emits a ``RuleExecuted`` event.

All functions raise ``services.errors`` exceptions; translating them into
HTTP responses is left to the API layer.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models.rules import AutomationRule
from models.schemas import AutomationRuleCreate, AutomationRuleUpdate
from services.analytics import (
    ExecutionOutcome,
    RuleExecuted,
    analytics_dict,
    record_execution,
    reset_analytics,
)
from services.errors import (
    InactiveRuleError,
    RuleExecutionError,
    RuleNotFoundError,
    RuleValidationError,
)
from services.rules import evaluate_conditions, select_actions
from services.validation import VALID_RULE_TYPES, validate_rule

logger = logging.getLogger(__name__)

RULE_CODE_PREFIX = "ARULE"
_RULE_CODE_ATTEMPTS = 3

# Columns a partial update may set to None.
_NULLABLE_FIELDS = {"description"}


# =====================================
# Helpers
# =====================================

def _next_rule_code(db: Session, today: Optional[datetime] = None) -> str:
    """Next ``ARULE-YYYYMMDD-NNNN`` code; the sequence restarts every day."""
    date_str = (today or datetime.now(timezone.utc)).strftime("%Y%m%d")
    prefix = f"{RULE_CODE_PREFIX}-{date_str}-"

    # Longer suffix first so that -10000 sorts after -9999.
    last = (
        db.query(AutomationRule.rule_code)
        .filter(AutomationRule.rule_code.like(f"{prefix}%"))
        .order_by(func.length(AutomationRule.rule_code).desc(), AutomationRule.rule_code.desc())
        .first()
    )

    sequence = 1
    if last and last[0]:
        try:
            sequence = int(last[0].rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            logger.warning("Unparseable rule code %s, restarting sequence", last[0])
    return f"{prefix}{sequence:04d}"


def _is_rule_code_collision(e: IntegrityError) -> bool:
    return "rule_code" in str(e.orig)


def _ensure_unique_name(db: Session, name: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(AutomationRule.id).filter(AutomationRule.name == name.strip())
    if exclude_id is not None:
        query = query.filter(AutomationRule.id != exclude_id)
    if query.first() is not None:
        raise RuleValidationError.single("name", f"An automation rule named '{name.strip()}' already exists")


def _commit(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Automation rule write rejected by database: {e.orig}")
        raise RuleValidationError.single("name", "Duplicate field value entered") from e


# =====================================
# CRUD
# =====================================

def create_rule(db: Session, rule_in: AutomationRuleCreate, created_by: Optional[str] = None) -> AutomationRule:
    data = rule_in.model_dump()
    errors = validate_rule(data)
    if errors:
        raise RuleValidationError(errors)

    _ensure_unique_name(db, data["name"])

    try:
        rule = AutomationRule(
            name=data["name"],
            description=data["description"],
            is_active=data["is_active"],
            rule_type=data["rule_type"],
            priority=data["priority"],
            trigger=data["trigger"],
            conditions=data["conditions"],
            actions=data["actions"],
            execution_config=data["execution_config"],
            created_by=created_by,
            updated_by=created_by,
        )
    except ValueError as e:
        raise RuleValidationError.single("name", str(e)) from e

    # A concurrent create can take the same code between read and insert.
    for attempt in range(1, _RULE_CODE_ATTEMPTS + 1):
        rule.rule_code = _next_rule_code(db)
        db.add(rule)
        try:
            db.commit()
            break
        except IntegrityError as e:
            db.rollback()
            if not _is_rule_code_collision(e):
                logger.warning(f"Automation rule write rejected by database: {e.orig}")
                raise RuleValidationError.single("name", "Duplicate field value entered") from e
            logger.warning(f"Rule code {rule.rule_code} already taken (attempt {attempt}/{_RULE_CODE_ATTEMPTS})")
    else:
        raise RuleValidationError.single("rule_code", "Could not allocate a unique rule code, please retry")

    db.refresh(rule)
    logger.info(f"Created automation rule {rule.rule_code} ({rule.name})")
    return rule


def get_rule(db: Session, rule_id: int) -> AutomationRule:
    rule = db.query(AutomationRule).filter(AutomationRule.id == rule_id).first()
    if rule is None:
        raise RuleNotFoundError(rule_id)
    return rule


def list_rules(
    db: Session,
    rule_type: Optional[str] = None,
    is_active: Optional[bool] = None,
    event_type: Optional[str] = None,
    skip: int = 0,
    limit: Optional[int] = None,
) -> List[AutomationRule]:
    """List rules ordered by priority, then id."""
    query = db.query(AutomationRule)
    if rule_type is not None:
        query = query.filter(AutomationRule.rule_type == rule_type)
    if is_active is not None:
        query = query.filter(AutomationRule.is_active == is_active)
    if event_type is not None:
        query = query.filter(AutomationRule.trigger["event_type"].as_string() == event_type)

    page_limit = min(limit or settings.list_page_limit, settings.list_page_limit)
    return (
        query.order_by(AutomationRule.priority.asc(), AutomationRule.id.asc())
        .offset(max(skip, 0))
        .limit(page_limit)
        .all()
    )


def list_active_rules(db: Session) -> List[AutomationRule]:
    return (
        db.query(AutomationRule)
        .filter(AutomationRule.is_active.is_(True))
        .order_by(AutomationRule.priority.asc(), AutomationRule.id.asc())
        .all()
    )


def list_rules_by_type(db: Session, rule_type: str) -> List[AutomationRule]:
    if rule_type not in VALID_RULE_TYPES:
        raise RuleValidationError.single("rule_type", f"Invalid rule type: {rule_type}")
    return (
        db.query(AutomationRule)
        .filter(AutomationRule.rule_type == rule_type)
        .order_by(AutomationRule.priority.asc(), AutomationRule.id.asc())
        .all()
    )


def update_rule(
    db: Session,
    rule_id: int,
    rule_in: AutomationRuleUpdate,
    updated_by: Optional[str] = None,
) -> AutomationRule:
    """
    Apply the fields present in ``rule_in``.

    When conditions or actions are replaced and
    ``settings.reset_analytics_on_update`` is on, the analytics restart
    from zero since they described the old definition.
    """
    dumped = rule_in.model_dump()
    data = {key: dumped[key] for key in rule_in.model_fields_set}

    errors = validate_rule(data, partial=True)
    if errors:
        raise RuleValidationError(errors)

    rule = get_rule(db, rule_id)

    if data.get("name"):
        _ensure_unique_name(db, data["name"], exclude_id=rule.id)

    try:
        for key, value in data.items():
            if value is None and key not in _NULLABLE_FIELDS:
                continue
            setattr(rule, key, value)
    except ValueError as e:
        db.rollback()
        raise RuleValidationError.single("name", str(e)) from e

    definition_changed = data.get("conditions") is not None or data.get("actions") is not None
    if definition_changed and settings.reset_analytics_on_update:
        reset_analytics(rule)
        logger.info(f"Reset analytics for automation rule {rule.id} after definition change")

    rule.updated_by = updated_by
    _commit(db)
    db.refresh(rule)
    logger.info(f"Updated automation rule {rule.id} ({rule.name}): {sorted(data)}")
    return rule


def delete_rule(db: Session, rule_id: int) -> AutomationRule:
    rule = get_rule(db, rule_id)
    db.delete(rule)
    db.commit()
    logger.info(f"Deleted automation rule {rule_id} ({rule.name})")
    return rule


def toggle_rule_status(db: Session, rule_id: int, updated_by: Optional[str] = None) -> AutomationRule:
    rule = get_rule(db, rule_id)
    rule.is_active = not rule.is_active
    rule.updated_by = updated_by
    db.commit()
    db.refresh(rule)
    logger.info(f"{'Activated' if rule.is_active else 'Deactivated'} automation rule {rule.id} ({rule.name})")
    return rule


# =====================================
# Test (dry run)
# =====================================

def test_rule(db: Session, rule_id: int, test_data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Evaluate a rule against sample data without recording anything.

    Returns:
        dict with rule_id, name, conditions_met, actions_to_execute, test_data
    """
    if test_data is None:
        raise RuleValidationError.single("testData", "Test data is required")

    rule = get_rule(db, rule_id)
    conditions_met = evaluate_conditions(rule.conditions, test_data)

    return {
        "rule_id": rule.id,
        "name": rule.name,
        "conditions_met": conditions_met,
        "actions_to_execute": select_actions(rule.actions, conditions_met),
        "test_data": dict(test_data),
    }


# =====================================
# Execute
# =====================================

def _run_rule(rule: AutomationRule, target_data: Optional[Mapping[str, Any]]) -> Tuple[Optional[bool], List[Dict[str, Any]]]:
    """
    Work done inside the timed section of an execution.

    Without target data only the execution itself is recorded; nothing is
    evaluated.  Selected actions are reported, not dispatched.
    """
    if target_data is None:
        logger.debug(f"Rule {rule.id} executed without target data; recording analytics only")
        return None, []

    conditions_met = evaluate_conditions(rule.conditions, target_data)
    return conditions_met, select_actions(rule.actions, conditions_met)


def _emit(listener: Optional[Callable[[RuleExecuted], None]], event: RuleExecuted) -> None:
    if listener is None:
        return
    try:
        listener(event)
    except Exception:
        logger.exception(f"RuleExecuted listener failed for rule {event.rule_id}")


def execute_rule(
    db: Session,
    rule_id: int,
    target_id: Any,
    target_type: Optional[str],
    target_data: Optional[Mapping[str, Any]] = None,
    on_executed: Optional[Callable[[RuleExecuted], None]] = None,
) -> Dict[str, Any]:
    """
    Manually execute a rule against a target entity.

    Analytics are folded in by one UPDATE evaluated in the database, so
    concurrent executions of the same rule are all counted.  Where the
    backend supports it the rule row is also locked for the duration of the
    call.  Any falsy ``target_id`` (None, "", 0, False) is rejected.

    Raises:
        RuleValidationError: target id or type missing
        RuleNotFoundError: unknown rule id
        InactiveRuleError: rule is deactivated (analytics untouched)
        RuleExecutionError: running the rule failed (recorded as a failure)
    """
    if not target_id or not target_type:
        raise RuleValidationError.single("target", "Target ID and type are required")

    rule = (
        db.query(AutomationRule)
        .filter(AutomationRule.id == rule_id)
        .with_for_update()
        .first()
    )
    if rule is None:
        db.rollback()
        raise RuleNotFoundError(rule_id)
    if not rule.is_active:
        db.rollback()
        raise InactiveRuleError(rule.id, rule.name)

    target_id = str(target_id)
    started = time.perf_counter()
    try:
        conditions_met, actions = _run_rule(rule, target_data)
    except Exception as e:
        elapsed_ms = (time.perf_counter() - started) * 1000
        record_execution(db, rule.id, ExecutionOutcome.FAILURE, elapsed_ms, error=str(e))
        db.commit()
        db.refresh(rule)
        logger.error(f"Automation rule {rule.id} failed on {target_type} {target_id}: {e}")
        _emit(on_executed, RuleExecuted(
            rule_id=rule.id,
            rule_name=rule.name,
            outcome=ExecutionOutcome.FAILURE,
            elapsed_ms=elapsed_ms,
            target_id=target_id,
            target_type=target_type,
            error=str(e),
        ))
        raise RuleExecutionError(f"Automation rule {rule.name} failed: {e}") from e

    elapsed_ms = (time.perf_counter() - started) * 1000
    record_execution(db, rule.id, ExecutionOutcome.SUCCESS, elapsed_ms)
    db.commit()
    db.refresh(rule)

    logger.info(
        f"Executed automation rule {rule.id} ({rule.name}) on {target_type} {target_id} "
        f"in {elapsed_ms:.2f} ms"
    )
    _emit(on_executed, RuleExecuted(
        rule_id=rule.id,
        rule_name=rule.name,
        outcome=ExecutionOutcome.SUCCESS,
        elapsed_ms=elapsed_ms,
        target_id=target_id,
        target_type=target_type,
    ))

    return {
        "message": f"Automation rule {rule.name} executed successfully",
        "execution_time_ms": elapsed_ms,
        "target": {"id": target_id, "type": target_type},
        "conditions_met": conditions_met,
        "actions_to_execute": actions,
        "analytics": analytics_dict(rule),
    }
