"""
Pydantic models and enums used throughout the automation rules API.

Request models only check shape.  Closed vocabularies (rule type, operator,
action type, ...) are checked by ``services.validation`` so that a bad value
produces the same descriptive 400 error whether it arrives on create or
update.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class RuleType(str, Enum):
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    NOTIFICATION = "notification"
    TASK_CREATION = "task_creation"
    LEAD_SCORING = "lead_scoring"
    DATA_ENRICHMENT = "data_enrichment"


class TriggerEventType(str, Enum):
    STATUS_CHANGE = "status_change"
    NEW_LEAD = "new_lead"
    NEW_RECORD = "new_record"
    ASSIGNMENT_CHANGE = "assignment_change"
    FIELD_UPDATE = "field_update"
    SCHEDULED = "scheduled"
    TIME_BASED = "time_based"
    MANUAL = "manual"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    UPDATE_STATUS = "update_status"
    ASSIGN_TO_USER = "assign_to_user"
    UPDATE_FIELD = "update_field"
    SEND_NOTIFICATION = "send_notification"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_TASK = "create_task"
    WEBHOOK = "webhook"
    # Stored by older rules; never accepted on create/update.
    UPDATE_STAGE = "update_stage"
    UPDATE_PRIORITY = "update_priority"
    SEND_WHATSAPP = "send_whatsapp"


# =====================================
# Rule definition
# =====================================

class TriggerIn(BaseModel):
    event_type: Optional[str] = Field(None, description="Event that fires the rule")
    specific_event: Optional[str] = Field(None, max_length=200)
    schedule: Optional[str] = Field(None, max_length=120, description="Cron expression, required for scheduled triggers")


class ConditionIn(BaseModel):
    field: Optional[str] = Field(None, description="Record field to test")
    operator: Optional[str] = Field(None, description="Comparison operator")
    value: Any = Field(None, description="Operand compared against the field value")
    logical_operator: Optional[str] = Field(LogicalOperator.AND.value, description="AND or OR")


class ActionIn(BaseModel):
    action_type: Optional[str] = Field(None, description="Action to request when conditions are met")
    action_data: Optional[Dict[str, Any]] = Field(None, description="Type-specific payload")
    order: int = Field(0, description="Execution order, ascending")
    enabled: bool = True


class ExecutionConfig(BaseModel):
    max_retries: int = Field(3, ge=0)
    retry_delay_minutes: int = Field(5, ge=0)
    timeout_seconds: int = Field(30, gt=0)
    stop_on_error: bool = False


class AutomationRuleBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Unique rule name")
    description: Optional[str] = Field(None, description="Rule description")
    is_active: bool = True
    rule_type: Optional[str] = Field(None, description="Rule category")
    priority: int = Field(0, description="Ordering among rules, lower runs first")


class AutomationRuleCreate(AutomationRuleBase):
    trigger: Optional[TriggerIn] = None
    conditions: List[ConditionIn] = Field(default_factory=list)
    actions: List[ActionIn] = Field(default_factory=list)
    execution_config: ExecutionConfig = Field(default_factory=ExecutionConfig)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Escalate hot leads",
            "rule_type": "assignment",
            "trigger": {"event_type": "new_lead"},
            "conditions": [
                {"field": "score", "operator": "greater_than", "value": 80},
                {"field": "source", "operator": "in", "value": ["web", "referral"], "logical_operator": "AND"},
            ],
            "actions": [
                {"action_type": "assign_to_user", "action_data": {"team_id": "sales-a"}, "order": 0},
                {"action_type": "send_email", "action_data": {"subject": "New hot lead"}, "order": 1},
            ],
        }
    })


class AutomationRuleUpdate(BaseModel):
    """Partial update; only supplied fields are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    rule_type: Optional[str] = None
    priority: Optional[int] = None
    trigger: Optional[TriggerIn] = None
    conditions: Optional[List[ConditionIn]] = None
    actions: Optional[List[ActionIn]] = None
    execution_config: Optional[ExecutionConfig] = None


class RuleAnalytics(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    last_executed_at: Optional[datetime] = None
    average_execution_time_ms: float = 0.0
    last_error: Optional[str] = None


class AutomationRuleRead(AutomationRuleBase):
    id: int
    rule_code: Optional[str] = None
    trigger: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    execution_config: Dict[str, Any] = Field(default_factory=dict)
    analytics: RuleAnalytics = Field(default_factory=RuleAnalytics)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =====================================
# Test (dry run) and execute
# =====================================

class SelectedAction(BaseModel):
    action_type: Optional[str] = None
    action_data: Any = None
    order: Union[int, float] = 0


class RuleTestRequest(BaseModel):
    test_data: Optional[Dict[str, Any]] = Field(None, alias="testData", description="Sample record to evaluate")

    model_config = ConfigDict(populate_by_name=True)


class RuleTestResult(BaseModel):
    rule_id: int
    name: str
    conditions_met: bool
    actions_to_execute: List[SelectedAction] = Field(default_factory=list)
    test_data: Dict[str, Any] = Field(default_factory=dict)


class RuleExecuteRequest(BaseModel):
    target_id: Optional[Union[str, int]] = Field(None, alias="targetId", description="Identifier of the target entity")
    target_type: Optional[str] = Field(None, alias="targetType", description="Kind of target, e.g. enquiry")
    target_data: Optional[Dict[str, Any]] = Field(
        None,
        alias="targetData",
        description="Current field values of the target; when given, conditions are evaluated against it",
    )

    model_config = ConfigDict(populate_by_name=True)


class ExecutionTarget(BaseModel):
    id: str
    type: str


class RuleExecuteResult(BaseModel):
    message: str
    execution_time_ms: float
    target: ExecutionTarget
    conditions_met: Optional[bool] = None
    actions_to_execute: List[SelectedAction] = Field(default_factory=list)
    analytics: RuleAnalytics
