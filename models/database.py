"""
Database configuration and session management.

SQLite is accepted for development and demo runs; PostgreSQL or MySQL is
expected in production.  The engine is built once at import time from
``settings.database_url``.
"""

from __future__ import annotations

import logging
from typing import Generator

from sqlalchemy import create_engine, exc, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

DATABASE_URL: str = settings.database_url

# Connection pool settings (ignored for SQLite)
POOL_SIZE: int = 5
MAX_OVERFLOW: int = 10
POOL_TIMEOUT: int = 30
POOL_RECYCLE: int = 3600

_ALLOWED_SCHEMES = ("sqlite", "postgresql", "postgresql+psycopg2", "mysql", "mysql+pymysql")


def _validate_database_url(url: str) -> None:
    """
    Reject empty or unsupported database URLs.

    Raises:
        ValueError: If the URL is empty or uses an unknown scheme
    """
    if not url:
        raise ValueError("DATABASE_URL cannot be empty")

    scheme = url.split(":", 1)[0]
    if scheme not in _ALLOWED_SCHEMES:
        raise ValueError(
            f"Unsupported database URL scheme. Allowed: {', '.join(_ALLOWED_SCHEMES)}"
        )

    if scheme == "sqlite" and settings.is_production:
        logger.critical(
            "SQLite detected in production environment. "
            "Configure DATABASE_URL to use PostgreSQL or MySQL."
        )


def _get_engine_config(url: str) -> dict:
    """Engine keyword arguments for the given database URL."""
    config = {
        "echo": False,
        "future": True,
    }

    if url.startswith("sqlite"):
        config.update({
            "connect_args": {
                "check_same_thread": False,  # sessions cross FastAPI worker threads
                "timeout": 20.0,
            },
            "poolclass": NullPool,
        })
    else:
        config.update({
            "pool_size": POOL_SIZE,
            "max_overflow": MAX_OVERFLOW,
            "pool_timeout": POOL_TIMEOUT,
            "pool_recycle": POOL_RECYCLE,
            "pool_pre_ping": True,
        })
        logger.info(
            f"Connection pool configured: size={POOL_SIZE}, max_overflow={MAX_OVERFLOW}"
        )

    return config


_validate_database_url(DATABASE_URL)

try:
    engine = create_engine(DATABASE_URL, **_get_engine_config(DATABASE_URL))
    logger.info(f"Database engine created: {DATABASE_URL.split('@')[-1]}")  # Hide credentials
except Exception as e:
    logger.critical(f"Failed to create database engine: {e}")
    raise

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency for FastAPI.

    Rolls back on any error and always closes the session.  Commits are
    explicit in the service layer.

    Usage:
        @router.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db: Session = SessionLocal()
    try:
        yield db
    except exc.SQLAlchemyError as e:
        logger.error(f"Database error: {e}", exc_info=True)
        db.rollback()
        raise
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def check_database_health() -> bool:
    """Return True if a trivial query succeeds against the engine."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
