"""
Append-only audit trail for automation rule changes and executions.

Entries are JSON lines in ``<AUDIT_LOG_DIR>/audit_log.jsonl``; the file is
rotated once it exceeds ``AUDIT_MAX_SIZE_MB``.  Writing an entry never
raises, so an audit failure cannot break the request that caused it.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from config import settings
from services.analytics import ExecutionOutcome, RuleExecuted

logger = logging.getLogger(__name__)

AUDIT_DIR = Path(settings.audit_log_dir)
AUDIT_FILE = AUDIT_DIR / "audit_log.jsonl"
MAX_LOG_SIZE = settings.audit_max_size_mb * 1024 * 1024

_lock = threading.Lock()


def _ensure_audit_directory() -> None:
    AUDIT_DIR.mkdir(parents=True, exist_ok=True)
    os.chmod(AUDIT_DIR, 0o700)


def _rotate_if_needed() -> None:
    """Rotate log file if it exceeds max size."""
    try:
        if AUDIT_FILE.exists() and AUDIT_FILE.stat().st_size >= MAX_LOG_SIZE:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            rotated_file = AUDIT_DIR / f"audit_log_{timestamp}.jsonl"
            AUDIT_FILE.rename(rotated_file)
            logger.info(f"Rotated audit log to {rotated_file}")
    except OSError as e:
        logger.error(f"Failed to rotate audit log: {e}")


def log_action(
    actor: str,
    role: str,
    action: str,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    request_id: Optional[str] = None,
    status: str = "success",
) -> bool:
    """
    Record an auditable action.

    Args:
        actor: User identifier
        role: User's role
        action: Dotted action name, e.g. "automation_rule.update"
        metadata: Additional context (rule id, changed fields, ...)
        ip_address: Source IP address
        request_id: Correlation ID for request tracing
        status: "success" or "failure"

    Returns:
        bool: True if the entry was written
    """
    if not actor or not role or not action:
        logger.error("Audit log rejected: missing required fields")
        return False

    now = datetime.now(timezone.utc)
    entry = {
        "timestamp": now.isoformat(),
        "timestamp_unix": int(now.timestamp()),
        "actor": str(actor)[:100],
        "role": str(role)[:50],
        "action": str(action)[:100],
        "status": status,
        "metadata": metadata or {},
    }
    if ip_address:
        entry["ip_address"] = str(ip_address)[:45]
    if request_id:
        entry["request_id"] = str(request_id)[:100]

    try:
        with _lock:
            _ensure_audit_directory()
            _rotate_if_needed()
            with open(AUDIT_FILE, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())
        return True
    except PermissionError:
        logger.error(f"Permission denied writing to audit log: {AUDIT_FILE}")
        return False
    except OSError as e:
        logger.error(f"OS error writing to audit log: {e}")
        return False


def log_rule_change(
    actor: str,
    role: str,
    change: str,
    rule_id: int,
    rule_name: str,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> bool:
    """
    Record a create/update/delete/toggle/test on a rule.

    Args:
        change: "create", "update", "delete", "toggle_status" or "test"
    """
    return log_action(
        actor=actor,
        role=role,
        action=f"automation_rule.{change}",
        metadata={"rule_id": rule_id, "rule_name": rule_name, **(details or {})},
        ip_address=ip_address,
        request_id=request_id,
    )


def rule_execution_logger(
    actor: str,
    role: str,
    ip_address: Optional[str] = None,
    request_id: Optional[str] = None,
):
    """
    Build a ``RuleExecuted`` listener that writes one audit entry per event.

    Usage:
        execute_rule(db, rule_id, ..., on_executed=rule_execution_logger(user.user_id, user.role))
    """
    def _listener(event: RuleExecuted) -> None:
        log_action(
            actor=actor,
            role=role,
            action="automation_rule.execute",
            metadata={
                "rule_id": event.rule_id,
                "rule_name": event.rule_name,
                "target_id": event.target_id,
                "target_type": event.target_type,
                "elapsed_ms": round(event.elapsed_ms, 3),
                "error": event.error,
            },
            ip_address=ip_address,
            request_id=request_id,
            status="success" if event.outcome == ExecutionOutcome.SUCCESS else "failure",
        )

    return _listener
