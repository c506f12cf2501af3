"""
Shared test fixtures for the automation rules service.

Provides isolated SQLite databases, FastAPI test clients, and a factory
for persisted rules.
"""

from __future__ import annotations

import hashlib
import os
import tempfile

# Force demo mode for all tests
os.environ["ENVIRONMENT"] = "demo"
os.environ["DATABASE_URL"] = "sqlite:///./test_crm_automation.db"
os.environ.setdefault("AUDIT_LOG_DIR", tempfile.mkdtemp(prefix="crm-audit-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from models.database import Base, get_db
from models.rules import AutomationRule


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def db_engine(tmp_path):
    """Create a fresh SQLite engine per test."""
    url = f"sqlite:///{tmp_path}/test.db"
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(db_engine):
    """Provide an isolated database session that rolls back after each test."""
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False,
                           expire_on_commit=False)
    session = Session()
    yield session
    session.rollback()
    session.close()


# ---------------------------------------------------------------------------
# FastAPI test clients
# ---------------------------------------------------------------------------

def _client_for(db_engine):
    from main import app

    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False,
                           expire_on_commit=False)

    def _override_get_db():
        db = Session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    return app


@pytest.fixture()
def client(db_engine):
    """FastAPI TestClient wired to a throwaway database."""
    app = _client_for(db_engine)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


_TEST_ADMIN_KEY = "test-admin-key-for-ci-must-be-32-chars!!"
_TEST_SALES_KEY = "test-sales-head-key-for-ci-32-chars!!!!"
_TEST_VIEWER_KEY = "test-viewer-key-for-ci-must-be-32-chars!"


@pytest.fixture()
def auth_client(db_engine, monkeypatch):
    """
    TestClient with authentication ENABLED.

    Three keys are known: admin (``auth_key``), sales_head and viewer
    (see ``role_keys``).
    """
    import enterprise.auth as auth_mod
    from config import Settings

    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setattr(auth_mod, "_settings", Settings())
    monkeypatch.setattr(auth_mod, "API_KEYS", {
        hashlib.sha256(_TEST_ADMIN_KEY.encode()).hexdigest(): ("admin", "admin"),
        hashlib.sha256(_TEST_SALES_KEY.encode()).hexdigest(): ("sales", "sales_head"),
        hashlib.sha256(_TEST_VIEWER_KEY.encode()).hexdigest(): ("viewer", "read_only"),
    })

    app = _client_for(db_engine)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_key():
    """The admin API key used by auth_client."""
    return _TEST_ADMIN_KEY


@pytest.fixture()
def role_keys():
    return {"admin": _TEST_ADMIN_KEY, "sales_head": _TEST_SALES_KEY, "read_only": _TEST_VIEWER_KEY}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture()
def rule_payload():
    """A valid create body; tests copy and tweak it."""
    def _payload(name="Open enquiry follow-up", **overrides):
        body = {
            "name": name,
            "rule_type": "task_creation",
            "trigger": {"event_type": "status_change"},
            "conditions": [{"field": "status", "operator": "equals", "value": "open"}],
            "actions": [
                {"action_type": "send_email", "action_data": {"subject": "hi"}, "order": 0, "enabled": True},
                {"action_type": "create_task", "action_data": {"title": "t", "due_date": "2025-01-01"}, "order": -1, "enabled": True},
            ],
        }
        body.update(overrides)
        return body

    return _payload


@pytest.fixture()
def make_rule(db_session):
    """Factory fixture inserting a rule directly, bypassing validation."""
    counter = {"n": 0}

    def _factory(name=None, conditions=None, actions=None, is_active=True, **fields):
        counter["n"] += 1
        rule = AutomationRule(
            rule_code=fields.pop("rule_code", f"ARULE-20250101-{counter['n']:04d}"),
            name=name or f"rule_{counter['n']}",
            rule_type=fields.pop("rule_type", "notification"),
            trigger=fields.pop("trigger", {"event_type": "manual"}),
            conditions=conditions or [],
            actions=actions or [{"action_type": "send_sms", "action_data": {"message": "x"}}],
            is_active=is_active,
            **fields,
        )
        db_session.add(rule)
        db_session.commit()
        db_session.refresh(rule)
        return rule

    return _factory
