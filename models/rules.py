"""
SQLAlchemy ORM model for automation rules.

A rule combines a trigger, an ordered list of conditions and an ordered list
of actions, all stored as structured JSON.  Execution analytics live in
plain columns so that the execute path can update them inside the same row
lock it reads the rule with.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, JSON, Index
from sqlalchemy.orm import validates

from models.database import Base


def _default_execution_config() -> dict:
    return {
        "max_retries": 3,
        "retry_delay_minutes": 5,
        "timeout_seconds": 30,
        "stop_on_error": False,
    }


class AutomationRule(Base):
    """
    Condition/action automation rule.

    Example definition::

        {
            "name": "Close stale enquiries",
            "rule_type": "status_change",
            "trigger": {"event_type": "time_based", "schedule": "0 2 * * *"},
            "conditions": [
                {"field": "status", "operator": "equals", "value": "open"},
                {"field": "days_idle", "operator": "greater_than", "value": 30, "logical_operator": "AND"}
            ],
            "actions": [
                {"action_type": "update_status", "action_data": {"status_id": "closed"}, "order": 0}
            ]
        }
    """

    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, index=True)
    rule_code = Column(String(32), nullable=False, unique=True, index=True, comment="ARULE-YYYYMMDD-NNNN")

    name = Column(String(200), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    rule_type = Column(String(50), nullable=False, index=True)
    priority = Column(Integer, nullable=False, default=0, index=True)

    trigger = Column(JSON, nullable=False, default=dict)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    execution_config = Column(JSON, nullable=False, default=_default_execution_config)

    # Execution analytics (written only by the execute path)
    total_executions = Column(Integer, nullable=False, default=0)
    successful_executions = Column(Integer, nullable=False, default=0)
    failed_executions = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime, nullable=True)
    average_execution_time_ms = Column(Float, nullable=False, default=0.0)
    last_error = Column(Text, nullable=True)

    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_automation_rules_active_priority", "is_active", "priority"),
    )

    @validates("name")
    def validate_name(self, key, value):
        if not value or not value.strip():
            raise ValueError("Rule name cannot be empty")
        if len(value) > 200:
            raise ValueError("Rule name must be 200 characters or less")
        return value.strip()

    @validates("conditions", "actions")
    def validate_sequence(self, key, value):
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError(f"Rule {key} must be a list")
        return value

    @validates("trigger")
    def validate_trigger(self, key, value):
        if not isinstance(value, dict):
            raise ValueError("Trigger must be a dictionary")
        return value

    def __repr__(self):
        return f"<AutomationRule(id={self.id}, name='{self.name}', is_active={self.is_active})>"

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "rule_code": self.rule_code,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "rule_type": self.rule_type,
            "priority": self.priority,
            "trigger": self.trigger or {},
            "conditions": self.conditions or [],
            "actions": self.actions or [],
            "execution_config": self.execution_config or _default_execution_config(),
            "analytics": {
                "total_executions": self.total_executions or 0,
                "successful_executions": self.successful_executions or 0,
                "failed_executions": self.failed_executions or 0,
                "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
                "average_execution_time_ms": self.average_execution_time_ms or 0.0,
                "last_error": self.last_error,
            },
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
