"""Tests for the JSONL audit trail."""

from __future__ import annotations

import json

import pytest

import enterprise.audit as audit
from services.analytics import ExecutionOutcome, RuleExecuted


@pytest.fixture()
def audit_file(tmp_path, monkeypatch):
    monkeypatch.setattr(audit, "AUDIT_DIR", tmp_path)
    monkeypatch.setattr(audit, "AUDIT_FILE", tmp_path / "audit_log.jsonl")
    return tmp_path / "audit_log.jsonl"


def _entries(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestLogRuleChange:

    def test_writes_entry(self, audit_file):
        assert audit.log_rule_change("alice", "admin", "update", 7, "Follow-up",
                                     details={"fields": ["name"]}, ip_address="10.0.0.1") is True
        [entry] = _entries(audit_file)
        assert entry["action"] == "automation_rule.update"
        assert entry["metadata"] == {"rule_id": 7, "rule_name": "Follow-up", "fields": ["name"]}
        assert entry["ip_address"] == "10.0.0.1"
        assert entry["status"] == "success"

    def test_rejects_missing_actor(self, audit_file):
        assert audit.log_action("", "admin", "automation_rule.create") is False
        assert not audit_file.exists()

    def test_rotates_large_file(self, audit_file, monkeypatch):
        monkeypatch.setattr(audit, "MAX_LOG_SIZE", 10)
        audit_file.write_text("x" * 20, encoding="utf-8")
        audit.log_rule_change("alice", "admin", "delete", 1, "r")
        assert len(_entries(audit_file)) == 1
        assert len(list(audit_file.parent.glob("audit_log_*.jsonl"))) == 1


class TestRuleExecutionLogger:

    def test_failure_event(self, audit_file):
        listener = audit.rule_execution_logger("bob", "sales_head", request_id="req-1")
        listener(RuleExecuted(
            rule_id=3,
            rule_name="Escalate",
            outcome=ExecutionOutcome.FAILURE,
            elapsed_ms=1.23456,
            target_id="ENQ-9",
            target_type="enquiry",
            error="boom",
        ))
        [entry] = _entries(audit_file)
        assert entry["action"] == "automation_rule.execute"
        assert entry["status"] == "failure"
        assert entry["request_id"] == "req-1"
        assert entry["metadata"]["target_id"] == "ENQ-9"
        assert entry["metadata"]["elapsed_ms"] == 1.235
        assert entry["metadata"]["error"] == "boom"
