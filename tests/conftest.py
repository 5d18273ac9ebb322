"""Test configuration and fixtures."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from aidev_pipeline.config import Settings
from aidev_pipeline.db.base import Base

from tests.fakes import FakeHostingService

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    """A fresh in-memory database shared by every session in the test."""
    from aidev_pipeline.db import audit_models, models  # noqa: F401

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Sessionmaker handed to workers so they open their own sessions."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Session used by the test body to arrange and inspect rows."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no external services and an empty reference docs directory."""
    return Settings(
        database_url="sqlite:///:memory:",
        openai_api_key=None,
        github_token=None,
        reference_docs_dir=str(tmp_path / "reference-docs"),
        attachments_dir=str(tmp_path),
        log_format="console",
    )


@pytest.fixture
def hosting() -> FakeHostingService:
    return FakeHostingService()


@pytest.fixture
def now() -> datetime:
    return NOW
