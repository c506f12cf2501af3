"""
Automation rule REST endpoints.

Thin layer over ``services.automation_rules``: authenticates the caller,
translates service exceptions into HTTP errors and writes the audit trail.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, Request, status
from sqlalchemy.orm import Session

from enterprise.audit import log_rule_change, rule_execution_logger
from enterprise.auth import ROLE_ADMIN, ROLE_SALES_HEAD, UserContext, require_auth, require_role
from models.database import get_db
from models.rules import AutomationRule
from models.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    RuleExecuteRequest,
    RuleExecuteResult,
    RuleTestRequest,
    RuleTestResult,
)
from services import automation_rules as rules_service
from services.errors import AutomationRuleError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/automation-rules", tags=["Automation Rules"])

_can_manage = require_role(ROLE_ADMIN, ROLE_SALES_HEAD)


def _to_read(rule: AutomationRule) -> AutomationRuleRead:
    return AutomationRuleRead(**rule.to_dict())


def _http_error(e: AutomationRuleError, request: Request) -> HTTPException:
    client_ip = request.client.host if request.client else "unknown"
    logger.warning(f"{request.method} {request.url.path} rejected ({e.status_code}): {e} (IP: {client_ip})")
    return HTTPException(status_code=e.status_code, detail=str(e))


def _request_context(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "request_id": request.headers.get("X-Request-ID"),
    }


# =====================================
# Read
# =====================================

@router.get("", response_model=List[AutomationRuleRead])
def api_list_rules(
    rule_type: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    event_type: Optional[str] = Query(None, description="Filter on trigger.event_type"),
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, gt=0),
    user: UserContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    rules = rules_service.list_rules(
        db, rule_type=rule_type, is_active=is_active, event_type=event_type, skip=skip, limit=limit,
    )
    return [_to_read(r) for r in rules]


@router.get("/active", response_model=List[AutomationRuleRead])
def api_list_active_rules(user: UserContext = Depends(require_auth), db: Session = Depends(get_db)):
    return [_to_read(r) for r in rules_service.list_active_rules(db)]


@router.get("/type/{rule_type}", response_model=List[AutomationRuleRead])
def api_list_rules_by_type(
    request: Request,
    rule_type: str,
    user: UserContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    try:
        rules = rules_service.list_rules_by_type(db, rule_type)
    except AutomationRuleError as e:
        raise _http_error(e, request)
    return [_to_read(r) for r in rules]


@router.get("/{rule_id}", response_model=AutomationRuleRead)
def api_get_rule(
    request: Request,
    rule_id: int = Path(..., gt=0),
    user: UserContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    try:
        return _to_read(rules_service.get_rule(db, rule_id))
    except AutomationRuleError as e:
        raise _http_error(e, request)


# =====================================
# Write
# =====================================

@router.post("", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def api_create_rule(
    request: Request,
    rule_in: AutomationRuleCreate = Body(...),
    user: UserContext = Depends(_can_manage),
    db: Session = Depends(get_db),
):
    try:
        rule = rules_service.create_rule(db, rule_in, created_by=user.user_id)
    except AutomationRuleError as e:
        raise _http_error(e, request)

    log_rule_change(
        user.user_id, user.role, "create", rule.id, rule.name,
        details={"rule_code": rule.rule_code}, **_request_context(request),
    )
    return _to_read(rule)


@router.put("/{rule_id}", response_model=AutomationRuleRead)
def api_update_rule(
    request: Request,
    rule_id: int = Path(..., gt=0),
    rule_in: AutomationRuleUpdate = Body(...),
    user: UserContext = Depends(_can_manage),
    db: Session = Depends(get_db),
):
    try:
        rule = rules_service.update_rule(db, rule_id, rule_in, updated_by=user.user_id)
    except AutomationRuleError as e:
        raise _http_error(e, request)

    log_rule_change(
        user.user_id, user.role, "update", rule.id, rule.name,
        details={"fields": sorted(rule_in.model_fields_set)}, **_request_context(request),
    )
    return _to_read(rule)


@router.delete("/{rule_id}")
def api_delete_rule(
    request: Request,
    rule_id: int = Path(..., gt=0),
    user: UserContext = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    try:
        rule = rules_service.delete_rule(db, rule_id)
    except AutomationRuleError as e:
        raise _http_error(e, request)

    log_rule_change(user.user_id, user.role, "delete", rule_id, rule.name, **_request_context(request))
    return {"ok": True, "id": rule_id}


@router.put("/{rule_id}/toggle-status", response_model=AutomationRuleRead)
def api_toggle_rule_status(
    request: Request,
    rule_id: int = Path(..., gt=0),
    user: UserContext = Depends(_can_manage),
    db: Session = Depends(get_db),
):
    try:
        rule = rules_service.toggle_rule_status(db, rule_id, updated_by=user.user_id)
    except AutomationRuleError as e:
        raise _http_error(e, request)

    log_rule_change(
        user.user_id, user.role, "toggle_status", rule.id, rule.name,
        details={"is_active": rule.is_active}, **_request_context(request),
    )
    return _to_read(rule)


# =====================================
# Test / Execute
# =====================================

@router.post("/{rule_id}/test", response_model=RuleTestResult)
def api_test_rule(
    request: Request,
    rule_id: int = Path(..., gt=0),
    body: RuleTestRequest = Body(...),
    user: UserContext = Depends(_can_manage),
    db: Session = Depends(get_db),
):
    """
    Dry-run a rule against ``testData``.

    **Does not modify the rule or its analytics.**
    """
    try:
        result = rules_service.test_rule(db, rule_id, body.test_data)
    except AutomationRuleError as e:
        raise _http_error(e, request)

    log_rule_change(
        user.user_id, user.role, "test", result["rule_id"], result["name"],
        details={"conditions_met": result["conditions_met"]}, **_request_context(request),
    )
    return RuleTestResult(**result)


@router.post("/{rule_id}/execute", response_model=RuleExecuteResult)
def api_execute_rule(
    request: Request,
    rule_id: int = Path(..., gt=0),
    body: RuleExecuteRequest = Body(...),
    user: UserContext = Depends(_can_manage),
    db: Session = Depends(get_db),
):
    """
    Manually execute a rule on ``targetType``/``targetId``.

    Records the execution in the rule analytics.  When ``targetData`` is
    supplied the rule's conditions are evaluated against it and the actions
    that would run are returned; actions are never dispatched from here.
    """
    try:
        result = rules_service.execute_rule(
            db,
            rule_id,
            target_id=body.target_id,
            target_type=body.target_type,
            target_data=body.target_data,
            on_executed=rule_execution_logger(user.user_id, user.role, **_request_context(request)),
        )
    except AutomationRuleError as e:
        raise _http_error(e, request)

    return RuleExecuteResult(**result)
