"""
Root test configuration and fixtures.

Every test gets a fresh SQLite in-memory database (StaticPool, so all
sessions share the one connection) with the gatekeeper tables created.
Time-sensitive components are driven by FIXED_NOW through injected clocks.
"""

import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from gatekeeper.config.settings import GateSettings, reset_settings
from gatekeeper.database.session import init_models
from gatekeeper.db_base import Base
from gatekeeper.models.subscriber import Subscriber

FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

WEBHOOK_TOKEN = "test-webhook-token"
SESSION_SECRET = "test-session-secret"


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Each test re-reads config and environment."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def db_engine():
    """SQLite in-memory engine with all tables."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_models(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings() -> GateSettings:
    """Settings with both secrets configured."""
    return GateSettings(
        webhook_token=WEBHOOK_TOKEN,
        session_jwt_secret=SESSION_SECRET,
        environment="test",
    )


@pytest.fixture
def fixed_now():
    return lambda: FIXED_NOW


@pytest.fixture
def make_subscriber(db_session):
    """Factory persisting a subscriber; defaults to an active, unexpired record."""

    def _make(**overrides) -> Subscriber:
        values = {
            "account_id": f"acct_{uuid.uuid4().hex[:8]}",
            "email": "owner@example.com",
            "domain": "example.com",
            "plan_name": "Pro",
            "status": "active",
            "expires_at": FIXED_NOW + timedelta(days=10),
            "billing_subscription_id": f"sub_{uuid.uuid4().hex[:8]}",
        }
        values.update(overrides)
        subscriber = Subscriber(**values)
        db_session.add(subscriber)
        db_session.commit()
        return subscriber

    return _make
