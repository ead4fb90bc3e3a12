"""
Pytest configuration and shared fixtures.

Every test is offline: source feeds are served by httpx.MockTransport and
the database is a temporary SQLite file per test.
"""
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hubzone.core.config import Settings, reset_settings
from hubzone.core.database import reset_database_state
from hubzone.core.event_bus import _EventBus
from hubzone.core.models import Base
from hubzone.jobs.map_update_job import MapUpdateJob
from tests.helpers import FIXED_NOW, FakeFeeds


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all pipeline-related env vars to ensure clean state.
    """
    env_vars = [
        "DATABASE_URL",
        "CENSUS_SURVEY_API_KEY",
        "MAX_CONCURRENCY",
        "MAX_RETRIES",
        "LOG_LEVEL",
        "CACHE_DIRECTORY",
        "CACHE_DURATION_DAYS",
        "REDESIGNATION_GRACE_PERIOD_MONTHS",
        "ADMIN_EMAILS",
        "JOB_TIMEOUT_SECONDS",
        "LOCK_LEASE_SECONDS",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    reset_settings()
    reset_database_state()

    yield

    reset_settings()
    reset_database_state()


@pytest.fixture(scope="function")
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'hubzone.db'}"


@pytest.fixture(scope="function")
def session_factory(db_url):
    """
    Session factory over a fresh SQLite file database.

    A file (not :memory:) so that separate sessions see each other's commits.
    """
    engine = create_engine(db_url)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Database session for direct setup and assertions."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def pipeline_settings(clean_env, db_url, tmp_path):
    """Settings tuned for fast offline runs."""
    return Settings(
        _env_file=None,
        database_url=db_url,
        cache_directory=str(tmp_path / "cache"),
        redesignation_grace_period_months=36,
        max_retries=2,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        stage_max_retries=0,
        stage_retry_delay_seconds=0.0,
        job_timeout_seconds=60,
    )


@pytest.fixture(scope="function")
def feeds():
    return FakeFeeds()


@pytest.fixture(scope="function")
def make_job(pipeline_settings, session_factory, feeds):
    """Factory for engines wired to the fake feeds and the test database."""
    def _make(settings: Optional[Settings] = None, **kwargs) -> MapUpdateJob:
        kwargs.setdefault("clock", lambda: FIXED_NOW)
        kwargs.setdefault("event_bus", _EventBus())
        job = MapUpdateJob(
            settings=settings or pipeline_settings,
            session_factory=session_factory,
            transport=feeds.transport(),
            **kwargs,
        )
        return job

    yield _make
