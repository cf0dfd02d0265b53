"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

# Inject repo root for reliable pytest imports (gate_api, tests.webhook_helpers)
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# Deterministic test environment (must precede any gate_api import)
os.environ["GATE_JSON_LOGS"] = "false"
os.environ["GATE_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["PLAN_FIXED_KEYS"] = "48H,7001"
os.environ["PLAN_MONTHLY_KEYS"] = "M1,7002"
os.environ["PLAN_ANNUAL_KEYS"] = "Y1,7003"
os.environ["FIXED_DURATION_HOURS"] = "48"
os.environ["ACCESS_REQUIRED"] = "true"
os.environ["ADMIN_KEY"] = "admin-test-key"
os.environ["PROVIDER_FALLBACK_ENABLED"] = "false"
os.environ["VALIDATION_CACHE_TTL_SECONDS"] = "0"

import json
from typing import Any, Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gate_api.access.cache import ValidationCache, get_validation_cache, reset_validation_cache
from gate_api.access.provider import get_validation_client, reset_validation_client
from gate_api.config.settings import reset_settings
from gate_api.db.models import Base
from gate_api.db.redis_client import RedisClient
from gate_api.db.session import get_db, reset_engine
from gate_api.main import create_app
from tests.webhook_helpers import FakeValidationClient, sign


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator:
    """Drop cached settings/clients so env patches take effect per test."""
    reset_settings()
    reset_validation_client()
    reset_validation_cache()
    yield
    reset_settings()
    reset_validation_client()
    reset_validation_cache()
    reset_engine()
    RedisClient._instance = None


@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite shared across threads (TestClient runs handlers in a worker thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Fresh database session for each test."""
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def fake_provider() -> FakeValidationClient:
    return FakeValidationClient()


@pytest.fixture
def app(session_factory, fake_provider):
    """Fresh app wired to the test database and a fake provider client."""
    application = create_app()

    def _get_test_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = _get_test_db
    application.dependency_overrides[get_validation_client] = lambda: fake_provider
    application.dependency_overrides[get_validation_cache] = lambda: ValidationCache(0)
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def post_webhook(client):
    """POST a signed webhook; returns the response."""

    def _post(
        payload: Any = None,
        *,
        signature: Optional[str] = None,
        headers: Optional[dict] = None,
        raw: Optional[bytes] = None,
    ):
        body = raw if raw is not None else json.dumps(payload).encode()
        all_headers = {
            "Content-Type": "application/json",
            "X-Signature": signature if signature is not None else sign(body),
        }
        all_headers.update(headers or {})
        return client.post("/webhooks/provider", content=body, headers=all_headers)

    return _post
