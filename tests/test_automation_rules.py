"""Tests for the automation rule service (CRUD, dry run, execute)."""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from models.rules import AutomationRule
from models.schemas import AutomationRuleCreate, AutomationRuleUpdate, RuleExecuteRequest, RuleTestRequest
from services import automation_rules as rules_service
from services.analytics import ExecutionOutcome
from services.errors import (
    InactiveRuleError,
    RuleExecutionError,
    RuleNotFoundError,
    RuleValidationError,
)


class TestRuleModel:
    """Tests for AutomationRule ORM validation."""

    def test_validate_name_strips_whitespace(self, make_rule):
        rule = make_rule(name="  padded  ")
        assert rule.name == "padded"

    def test_validate_name_rejects_empty(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            AutomationRule(name="   ")

    def test_validate_conditions_must_be_list(self):
        with pytest.raises(ValueError, match="conditions must be a list"):
            AutomationRule(name="bad", conditions={"field": "x"})

    def test_to_dict_includes_analytics(self, make_rule):
        d = make_rule(name="to_dict").to_dict()
        assert d["name"] == "to_dict"
        assert d["is_active"] is True
        assert d["analytics"]["total_executions"] == 0
        assert d["execution_config"]["max_retries"] == 3


class TestCreateRule:

    def test_create_assigns_daily_rule_code(self, db_session, rule_payload):
        first = rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload("first")), created_by="alice")
        second = rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload("second")))
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        assert first.rule_code == f"ARULE-{today}-0001"
        assert second.rule_code == f"ARULE-{today}-0002"
        assert first.created_by == "alice"

    def test_rule_code_sequence_continues_past_9999(self, db_session, make_rule):
        make_rule(name="nine", rule_code="ARULE-20250101-9999")
        make_rule(name="ten", rule_code="ARULE-20250101-10000")
        today = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert rules_service._next_rule_code(db_session, today=today) == "ARULE-20250101-10001"

    def test_create_retries_taken_rule_code(self, db_session, make_rule, rule_payload, monkeypatch):
        make_rule(name="holder", rule_code="ARULE-20250101-0001")
        codes = iter(["ARULE-20250101-0001", "ARULE-20250101-0002"])
        monkeypatch.setattr(rules_service, "_next_rule_code", lambda db, today=None: next(codes))

        rule = rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload("late")))
        assert rule.rule_code == "ARULE-20250101-0002"
        assert rule.name == "late"

    def test_create_gives_up_on_rule_code_collisions(self, db_session, make_rule, rule_payload, monkeypatch):
        make_rule(name="holder", rule_code="ARULE-20250101-0001")
        monkeypatch.setattr(rules_service, "_next_rule_code", lambda db, today=None: "ARULE-20250101-0001")

        with pytest.raises(RuleValidationError) as exc:
            rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload("unlucky")))
        assert exc.value.errors[0].field == "rule_code"
        assert db_session.query(AutomationRule).count() == 1

    def test_create_preserves_condition_and_action_order(self, db_session, rule_payload):
        rule = rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload()))
        assert [a["action_type"] for a in rule.actions] == ["send_email", "create_task"]
        assert rule.conditions[0]["logical_operator"] == "AND"

    def test_create_rejects_invalid_definition(self, db_session, rule_payload):
        body = rule_payload(trigger={"event_type": "scheduled"})
        with pytest.raises(RuleValidationError, match="Schedule is required"):
            rules_service.create_rule(db_session, AutomationRuleCreate(**body))
        assert db_session.query(AutomationRule).count() == 0

    def test_create_rejects_duplicate_name(self, db_session, rule_payload):
        rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload("dup")))
        with pytest.raises(RuleValidationError, match="already exists"):
            rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload("dup")))

    def test_create_rejects_blank_name(self, db_session, rule_payload):
        with pytest.raises(RuleValidationError, match="cannot be empty"):
            rules_service.create_rule(db_session, AutomationRuleCreate(**rule_payload("   ")))


class TestQueries:

    def test_get_missing_rule(self, db_session):
        with pytest.raises(RuleNotFoundError):
            rules_service.get_rule(db_session, 999)

    def test_list_orders_by_priority(self, make_rule, db_session):
        make_rule(name="low", priority=5)
        make_rule(name="high", priority=1)
        assert [r.name for r in rules_service.list_rules(db_session)] == ["high", "low"]

    def test_list_filters(self, make_rule, db_session):
        make_rule(name="a", rule_type="assignment", trigger={"event_type": "new_lead"})
        make_rule(name="b", rule_type="notification", is_active=False)
        assert [r.name for r in rules_service.list_rules(db_session, rule_type="assignment")] == ["a"]
        assert [r.name for r in rules_service.list_rules(db_session, is_active=False)] == ["b"]
        assert [r.name for r in rules_service.list_rules(db_session, event_type="new_lead")] == ["a"]

    def test_list_active_and_by_type(self, make_rule, db_session):
        make_rule(name="on", rule_type="lead_scoring")
        make_rule(name="off", rule_type="lead_scoring", is_active=False)
        assert [r.name for r in rules_service.list_active_rules(db_session)] == ["on"]
        assert len(rules_service.list_rules_by_type(db_session, "lead_scoring")) == 2

    def test_list_by_invalid_type(self, db_session):
        with pytest.raises(RuleValidationError, match="Invalid rule type"):
            rules_service.list_rules_by_type(db_session, "webhook")


class TestUpdateRule:

    def _executed_rule(self, make_rule, db_session):
        rule = make_rule(name="tracked")
        rules_service.execute_rule(db_session, rule.id, target_id="E1", target_type="enquiry")
        assert rule.total_executions == 1
        return rule

    def test_update_actions_resets_analytics(self, make_rule, db_session):
        rule = self._executed_rule(make_rule, db_session)
        update = AutomationRuleUpdate(actions=[{"action_type": "send_email", "action_data": {"subject": "s"}}])
        updated = rules_service.update_rule(db_session, rule.id, update, updated_by="bob")
        assert updated.total_executions == 0
        assert updated.last_executed_at is None
        assert updated.updated_by == "bob"

    def test_update_name_keeps_analytics(self, make_rule, db_session):
        rule = self._executed_rule(make_rule, db_session)
        updated = rules_service.update_rule(db_session, rule.id, AutomationRuleUpdate(name="renamed"))
        assert updated.name == "renamed"
        assert updated.total_executions == 1

    def test_reset_policy_can_be_disabled(self, make_rule, db_session, monkeypatch):
        monkeypatch.setattr(
            rules_service, "settings",
            dataclasses.replace(rules_service.settings, reset_analytics_on_update=False),
        )
        rule = self._executed_rule(make_rule, db_session)
        update = AutomationRuleUpdate(conditions=[{"field": "x", "operator": "exists"}])
        assert rules_service.update_rule(db_session, rule.id, update).total_executions == 1

    def test_update_validates_before_lookup(self, db_session):
        with pytest.raises(RuleValidationError, match="Invalid rule type"):
            rules_service.update_rule(db_session, 999, AutomationRuleUpdate(rule_type="nope"))

    def test_update_missing_rule(self, db_session):
        with pytest.raises(RuleNotFoundError):
            rules_service.update_rule(db_session, 999, AutomationRuleUpdate(priority=3))

    def test_update_can_clear_description(self, make_rule, db_session):
        rule = make_rule(name="described", description="old")
        updated = rules_service.update_rule(db_session, rule.id, AutomationRuleUpdate(description=None))
        assert updated.description is None

    def test_update_rejects_taken_name(self, make_rule, db_session):
        make_rule(name="taken")
        rule = make_rule(name="mine")
        with pytest.raises(RuleValidationError, match="already exists"):
            rules_service.update_rule(db_session, rule.id, AutomationRuleUpdate(name="taken"))


class TestToggleAndDelete:

    def test_toggle_flips_status(self, make_rule, db_session):
        rule = make_rule(name="toggled")
        assert rules_service.toggle_rule_status(db_session, rule.id).is_active is False
        assert rules_service.toggle_rule_status(db_session, rule.id).is_active is True

    def test_delete(self, make_rule, db_session):
        rule = make_rule(name="gone")
        rules_service.delete_rule(db_session, rule.id)
        with pytest.raises(RuleNotFoundError):
            rules_service.get_rule(db_session, rule.id)


class TestDryRun:

    def test_dry_run_result(self, make_rule, db_session):
        rule = make_rule(
            name="dry",
            conditions=[{"field": "status", "operator": "equals", "value": "open"}],
            actions=[
                {"action_type": "send_email", "action_data": {"subject": "hi"}, "order": 0, "enabled": True},
                {"action_type": "create_task", "action_data": {"title": "t", "due_date": "2025-01-01"}, "order": -1, "enabled": True},
            ],
        )
        result = rules_service.test_rule(db_session, rule.id, {"status": "open"})
        assert result["rule_id"] == rule.id
        assert result["conditions_met"] is True
        assert [a["action_type"] for a in result["actions_to_execute"]] == ["create_task", "send_email"]
        assert result["test_data"] == {"status": "open"}

    def test_dry_run_does_not_touch_analytics(self, make_rule, db_session):
        rule = make_rule(name="untouched")
        rules_service.test_rule(db_session, rule.id, {})
        db_session.refresh(rule)
        assert rule.total_executions == 0
        assert rule.last_executed_at is None

    def test_dry_run_requires_test_data(self, make_rule, db_session):
        rule = make_rule(name="needs data")
        with pytest.raises(RuleValidationError, match="Test data is required"):
            rules_service.test_rule(db_session, rule.id, None)

    def test_dry_run_unknown_rule(self, db_session):
        with pytest.raises(RuleNotFoundError):
            rules_service.test_rule(db_session, 42, {"a": 1})


class TestExecuteRule:

    def test_execute_records_success(self, make_rule, db_session):
        rule = make_rule(name="exec")
        events = []
        result = rules_service.execute_rule(
            db_session, rule.id, target_id=7, target_type="enquiry", on_executed=events.append,
        )
        assert result["message"] == "Automation rule exec executed successfully"
        assert result["target"] == {"id": "7", "type": "enquiry"}
        assert result["conditions_met"] is None
        assert result["analytics"]["total_executions"] == 1
        assert result["analytics"]["successful_executions"] == 1
        assert result["analytics"]["last_executed_at"] is not None
        assert len(events) == 1
        assert events[0].outcome == ExecutionOutcome.SUCCESS
        assert events[0].target_id == "7"

    def test_execute_with_target_data_evaluates(self, make_rule, db_session):
        rule = make_rule(
            name="evaluating",
            conditions=[{"field": "score", "operator": "greater_than", "value": 50}],
            actions=[{"action_type": "assign_to_user", "action_data": {"team_id": "a"}, "order": 0}],
        )
        hit = rules_service.execute_rule(db_session, rule.id, "L1", "lead", target_data={"score": 80})
        miss = rules_service.execute_rule(db_session, rule.id, "L2", "lead", target_data={"score": 10})
        assert hit["conditions_met"] is True
        assert [a["action_type"] for a in hit["actions_to_execute"]] == ["assign_to_user"]
        assert miss["conditions_met"] is False
        assert miss["actions_to_execute"] == []
        assert miss["analytics"]["total_executions"] == 2

    @pytest.mark.parametrize("target_id", [None, "", 0, False])
    def test_execute_rejects_falsy_target_id(self, make_rule, db_session, target_id):
        rule = make_rule(name="no target")
        with pytest.raises(RuleValidationError, match="Target ID and type are required"):
            rules_service.execute_rule(db_session, rule.id, target_id=target_id, target_type="enquiry")
        db_session.refresh(rule)
        assert rule.total_executions == 0

    def test_execute_accepts_string_zero_target_id(self, make_rule, db_session):
        rule = make_rule(name="zero string")
        result = rules_service.execute_rule(db_session, rule.id, target_id="0", target_type="enquiry")
        assert result["target"]["id"] == "0"

    def test_running_average_is_stored(self, make_rule, db_session, monkeypatch):
        rule = make_rule(name="timed")
        ticks = iter([0.0, 0.1, 1.0, 1.3])
        monkeypatch.setattr(rules_service, "time", SimpleNamespace(perf_counter=lambda: next(ticks)))

        rules_service.execute_rule(db_session, rule.id, "E1", "enquiry")
        result = rules_service.execute_rule(db_session, rule.id, "E2", "enquiry")
        assert result["analytics"]["total_executions"] == 2
        assert result["analytics"]["average_execution_time_ms"] == pytest.approx(200.0)

    def test_concurrent_executions_are_all_counted(self, make_rule, db_engine, db_session, monkeypatch):
        rule = make_rule(name="busy")
        barrier = threading.Barrier(2, timeout=5)
        run_rule = rules_service._run_rule

        def _run_together(rule, target_data):
            # both callers have loaded the row before either records
            barrier.wait()
            return run_rule(rule, target_data)

        monkeypatch.setattr(rules_service, "_run_rule", _run_together)
        Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)
        errors = []

        def _execute(target_id):
            session = Session()
            try:
                rules_service.execute_rule(session, rule.id, target_id, "enquiry")
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=_execute, args=(f"E{i}",)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=15)

        assert errors == []
        db_session.refresh(rule)
        assert rule.total_executions == 2
        assert rule.successful_executions == 2

    def test_execute_inactive_rule(self, make_rule, db_session):
        rule = make_rule(name="sleeping", is_active=False)
        with pytest.raises(InactiveRuleError):
            rules_service.execute_rule(db_session, rule.id, "E1", "enquiry")
        db_session.refresh(rule)
        assert rule.total_executions == 0

    def test_execute_unknown_rule(self, db_session):
        with pytest.raises(RuleNotFoundError):
            rules_service.execute_rule(db_session, 404, "E1", "enquiry")

    def test_execute_failure_is_recorded(self, make_rule, db_session, monkeypatch):
        rule = make_rule(name="fragile")

        def _boom(rule, target_data):
            raise RuntimeError("downstream unavailable")

        monkeypatch.setattr(rules_service, "_run_rule", _boom)
        events = []
        with pytest.raises(RuleExecutionError, match="downstream unavailable"):
            rules_service.execute_rule(db_session, rule.id, "E1", "enquiry", on_executed=events.append)

        db_session.refresh(rule)
        assert rule.failed_executions == 1
        assert rule.total_executions == 1
        assert rule.last_error == "downstream unavailable"
        assert events[0].outcome == ExecutionOutcome.FAILURE

        monkeypatch.undo()
        rules_service.execute_rule(db_session, rule.id, "E1", "enquiry")
        db_session.refresh(rule)
        assert rule.successful_executions == 1
        assert rule.last_error == "downstream unavailable"

    def test_listener_failure_does_not_fail_execution(self, make_rule, db_session):
        rule = make_rule(name="noisy listener")

        def _broken(event):
            raise RuntimeError("listener down")

        result = rules_service.execute_rule(db_session, rule.id, "E1", "enquiry", on_executed=_broken)
        assert result["analytics"]["successful_executions"] == 1


class TestRequestSchemas:

    def test_run_bodies_accept_both_spellings(self):
        assert RuleExecuteRequest(targetId="E1", targetType="enquiry").target_id == "E1"
        assert RuleExecuteRequest(target_id="E1", target_type="enquiry").target_type == "enquiry"
        assert RuleTestRequest(testData={"a": 1}).test_data == {"a": 1}
        assert RuleTestRequest(test_data={"a": 1}).test_data == {"a": 1}

    def test_models_use_config_dict(self):
        assert RuleExecuteRequest.model_config["populate_by_name"] is True
        assert RuleTestRequest.model_config["populate_by_name"] is True
        assert "example" in AutomationRuleCreate.model_json_schema()
