"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus a
controllable clock so billing-cycle and expiry behaviour is deterministic.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from invow.config.entitlements import EntitlementSettings

# Set test environment
os.environ.setdefault("ENV", "test")


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> datetime:
        self.current = moment
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at a fixed UTC instant."""
    return FrozenClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> EntitlementSettings:
    """Explicit settings so tests never depend on the environment."""
    return EntitlementSettings(cache_ttl_seconds=300, cache_max_size=100, max_retries=3)


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    SQLite in-memory, shared across threads via StaticPool.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import and create all tables
    from invow.db_base import Base
    from invow.models import subscription, invoice  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Each test gets a fresh session that rolls back after the test completes.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: tests that exercise the HTTP surface end to end"
    )
