import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SEC", "0")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from quota_orchestrator.models.base import Base
import quota_orchestrator.models  # Register all models
import quota_orchestrator.auth.models
from quota_orchestrator.ratelimit.metrics import get_metrics_collector


class FakeClock:
    """Settable clock returning naive UTC datetimes."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 14, 30, 15))


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset_metrics()
    yield
