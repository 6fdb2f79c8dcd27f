"""
pytest configuration – isolated stores, a controllable clock and an app
instance per test. The default database is pointed at in-memory SQLite
before anything imports threatguard.config.
"""
from __future__ import annotations

import os

os.environ.setdefault("THREATGUARD_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("THREATGUARD_ENVIRONMENT", "development")
os.environ.setdefault("THREATGUARD_LOG_FORMAT", "text")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from threatguard import models  # noqa: F401 – registers ORM mappings with Base.metadata
from threatguard.config import Settings
from threatguard.database import Base
from threatguard.detection import load_rules
from threatguard.engine import SecurityEngine
from threatguard.geo import NullGeoResolver
from threatguard.main import create_app
from threatguard.store import InMemoryStore, SecurityStore, SqlStore, StoreError

TEST_API_KEY = "test-admin-key"


class SimClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class UnavailableStore(SecurityStore):
    """Every call fails, as if the database were unreachable."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, *args, **kwargs):
        self.calls += 1
        raise StoreError("connection refused")

    increment_window = _fail
    find_active_block = _fail
    list_active_blocks = _fail
    upsert_block = _fail
    delete_block = _fail
    append_visit = _fail
    count_visits = _fail
    list_visits = _fail
    append_alert = _fail
    list_alerts = _fail


@pytest.fixture
def clock() -> SimClock:
    # 30 seconds into a minute, so a 60s window boundary is 30s away
    return SimClock(datetime(2026, 3, 2, 12, 0, 30))


@pytest.fixture
def rules():
    return load_rules()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="development",
        admin_api_key=TEST_API_KEY,
        fail_mode="open",
        brute_force_enabled=True,
        brute_force_window_minutes=5,
        brute_force_threshold=20,
        brute_force_block_hours=1,
        geo_enabled=False,
    )


@pytest.fixture
def memory_store(clock) -> InMemoryStore:
    return InMemoryStore(clock)


@pytest.fixture
def sql_store():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield SqlStore(factory)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def engine(rules, memory_store, settings, clock) -> SecurityEngine:
    return SecurityEngine(rules, memory_store, settings=settings, clock=clock, geo=NullGeoResolver())


@pytest.fixture
def client(engine, settings, clock) -> TestClient:
    app = create_app(store=engine.store, config=settings, clock=clock, geo=NullGeoResolver())
    return TestClient(app)


@pytest.fixture
def admin_headers() -> dict:
    return {"X-API-Key": TEST_API_KEY}


@pytest.fixture
def unavailable_store() -> UnavailableStore:
    return UnavailableStore()
