"""
FastAPI application exposing the CRM automation rules API.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from models.database import Base, check_database_health, engine
from enterprise.automation import router as automation_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Auto-create tables in demo and development modes
if settings.auto_create_tables:
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")

app = FastAPI(title="CRM Automation Rules")

app.include_router(automation_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict:
    return {
        "status": "ok",
        "mode": settings.mode.value,
        "database": "ok" if check_database_health() else "unavailable",
    }


@app.get("/api/settings")
def api_settings() -> dict:
    """Expose non-sensitive runtime settings so the admin UI can adapt."""
    return {
        "mode": settings.mode.value,
        "auth_enabled": settings.auth_enabled,
        "reset_analytics_on_update": settings.reset_analytics_on_update,
        "list_page_limit": settings.list_page_limit,
    }


@app.on_event("startup")
async def _on_startup() -> None:
    logger.info(f"CRM automation rules service starting in {settings.mode.value} mode")
