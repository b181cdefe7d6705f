"""
Pytest configuration and shared fixtures.

Test environment variables are seeded here before any app import, so
settings resolve against a throwaway SQLite file.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "wa_ingest_test.db"),
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("APP_SECRET", "test-app-secret")
os.environ.setdefault("API_KEY", "test-api-key")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from wa_ingest.config import get_settings
get_settings.cache_clear()

import wa_ingest.models  # noqa: E402,F401  register tables on Base.metadata
from wa_ingest.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="function")
def db():
    """Session against a freshly created schema."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    from fastapi.testclient import TestClient
    from wa_ingest.main import app

    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def api_headers():
    return {"X-API-Key": os.environ["API_KEY"]}
