"""
Runtime settings for the automation rules service.

Everything is read once from environment variables when the module is
imported.  With nothing set the service comes up in demo mode against a
local SQLite file, with authentication off and tables created on startup.

Environment variables:
    ENVIRONMENT                 demo (default), development or production
    DATABASE_URL                SQLAlchemy URL
    CORS_ORIGINS                comma separated origins
    AUDIT_LOG_DIR               directory of the JSONL audit trail
    AUDIT_MAX_SIZE_MB           rotate the audit file past this size
    RESET_ANALYTICS_ON_UPDATE   zero analytics when conditions/actions change
    RULES_PAGE_LIMIT            hard cap on rules returned by one list call
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List

logger = logging.getLogger(__name__)


class AppMode(str, Enum):
    DEMO = "demo"
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def _detect_mode() -> AppMode:
    """Derive the application mode from ENVIRONMENT env-var."""
    raw = os.getenv("ENVIRONMENT", "demo").lower().strip()
    if raw in ("production", "prod"):
        return AppMode.PRODUCTION
    if raw == "development":
        return AppMode.DEVELOPMENT
    return AppMode.DEMO


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    """Immutable, environment-derived settings."""

    # --- mode ---
    mode: AppMode = field(default_factory=_detect_mode)

    # --- database ---
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./crm_automation.db")
    )
    # Production schemas are managed outside the service.
    auto_create_tables: bool = field(
        default_factory=lambda: _detect_mode() is not AppMode.PRODUCTION
    )

    # --- auth ---
    auth_enabled: bool = field(default_factory=lambda: _detect_mode() is AppMode.PRODUCTION)
    demo_admin_key: str = "demo-crm-admin-key-do-not-use-in-prod!!"

    # --- CORS ---
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
    )

    # --- audit ---
    audit_log_dir: str = field(
        default_factory=lambda: os.getenv("AUDIT_LOG_DIR", "./logs/audit")
    )
    audit_max_size_mb: int = field(
        default_factory=lambda: int(os.getenv("AUDIT_MAX_SIZE_MB", "100"))
    )

    # --- automation rules ---
    # Zero the analytics block when an update replaces conditions or actions.
    reset_analytics_on_update: bool = field(
        default_factory=lambda: _env_flag("RESET_ANALYTICS_ON_UPDATE", "true")
    )
    list_page_limit: int = field(
        default_factory=lambda: int(os.getenv("RULES_PAGE_LIMIT", "100"))
    )

    # --- convenience helpers ---

    @property
    def is_demo(self) -> bool:
        return self.mode == AppMode.DEMO

    @property
    def is_production(self) -> bool:
        return self.mode == AppMode.PRODUCTION


# Module-level singleton; import ``settings`` from anywhere.
settings = Settings()

logger.info(f"Settings loaded: mode={settings.mode.value}, auth_enabled={settings.auth_enabled}")
