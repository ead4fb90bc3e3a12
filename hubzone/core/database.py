"""
Database connection and session management.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from hubzone.core.config import get_settings
from hubzone.core.models import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton engine and session factory, created once and reused
# ---------------------------------------------------------------------------
_engine: Optional[Engine] = None
_SessionLocal = None


def get_engine() -> Engine:
    """
    Get the shared database engine (singleton).

    The engine is created once and reused for the lifetime of the process.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs = {"pool_pre_ping": True, "echo": False}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10)
        _engine = create_engine(settings.database_url, **kwargs)
    return _engine


def create_tables(engine: Optional[Engine] = None) -> None:
    """
    Create all tables if they don't exist.

    Idempotent - safe to call multiple times.
    """
    if engine is None:
        engine = get_engine()

    logger.info("Creating tables if they don't exist...")
    Base.metadata.create_all(bind=engine)
    logger.info("Tables ready")


def get_session_factory():
    """Get the shared session factory (singleton)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=get_engine()
        )
    return _SessionLocal


def reset_database_state() -> None:
    """Drop the cached engine and session factory (used by tests)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def session_scope(session_factory=None) -> Iterator[Session]:
    """
    Transactional scope around a series of operations.

    Commits on success, rolls back on any exception, always closes.

    Usage:
        with session_scope() as db:
            db.add(obj)
    """
    SessionLocal = session_factory or get_session_factory()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
