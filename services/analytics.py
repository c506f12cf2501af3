"""
Execution bookkeeping for automation rules.

Only the execute path records executions; a dry run never touches these
counters.  ``record_execution`` folds one execution into the stored row with
a single UPDATE computed by the database, so concurrent executions of the
same rule are all counted even where row locks are unavailable (SQLite).
The commit is left to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from models.rules import AutomationRule

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class RuleExecuted:
    """Emitted once per execute call, after the analytics were updated."""
    rule_id: int
    rule_name: str
    outcome: ExecutionOutcome
    elapsed_ms: float
    target_id: Optional[str] = None
    target_type: Optional[str] = None
    error: Optional[str] = None


def analytics_dict(rule: Any) -> Dict[str, Any]:
    return {
        "total_executions": rule.total_executions or 0,
        "successful_executions": rule.successful_executions or 0,
        "failed_executions": rule.failed_executions or 0,
        "last_executed_at": rule.last_executed_at,
        "average_execution_time_ms": rule.average_execution_time_ms or 0.0,
        "last_error": rule.last_error,
    }


def record_execution(
    db: Session,
    rule_id: int,
    outcome: ExecutionOutcome,
    elapsed_ms: float,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Fold one execution into the rule's stored analytics.

    The average is a running mean over all executions:
    ``new_avg = (old_avg * n + elapsed_ms) / (n + 1)`` with ``n`` the total
    before this execution.  ``last_error`` is written on failure and left
    alone on success.  Every right-hand side reads the row as it is when the
    UPDATE runs, never a copy loaded earlier by this session.
    """
    table = AutomationRule.__table__
    total = func.coalesce(table.c.total_executions, 0)
    average = func.coalesce(table.c.average_execution_time_ms, 0.0)

    # MySQL applies SET clauses left to right: the average must read the old total.
    values = [
        (table.c.average_execution_time_ms, (average * total + elapsed_ms) / (total + 1)),
        (table.c.total_executions, total + 1),
        (table.c.last_executed_at, now or datetime.now(timezone.utc)),
    ]
    if outcome == ExecutionOutcome.SUCCESS:
        values.append((table.c.successful_executions, func.coalesce(table.c.successful_executions, 0) + 1))
    else:
        values.append((table.c.failed_executions, func.coalesce(table.c.failed_executions, 0) + 1))
        values.append((table.c.last_error, error or "Unknown error"))

    db.execute(update(table).where(table.c.id == rule_id).ordered_values(*values))
    logger.debug("Recorded %s execution for rule %s: %.2f ms", outcome.value, rule_id, elapsed_ms)


def reset_analytics(rule: Any) -> None:
    """Zero every counter, e.g. after the rule's conditions or actions changed."""
    rule.total_executions = 0
    rule.successful_executions = 0
    rule.failed_executions = 0
    rule.last_executed_at = None
    rule.average_execution_time_ms = 0.0
    rule.last_error = None
