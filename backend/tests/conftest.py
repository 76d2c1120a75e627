from __future__ import annotations

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

# Set test environment BEFORE importing omnicrm modules.
# omnicrm.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any omnicrm imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-integration-tests-only")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import omnicrm.models  # noqa: F401 — register SQLModel tables
from omnicrm.config import Settings
from omnicrm.db import get_session
from omnicrm.handlers import JobContext
from omnicrm.main import app as fastapi_app
from omnicrm.main import init_pipeline
from omnicrm.services.embedding import EmbeddingProvider

from helpers import auth_headers, keyword_vector, make_settings

# ── Settings / database fixtures ──────────────────────────────────────


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return make_settings()


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Pipeline fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="mock_provider")
def mock_provider_fixture() -> MagicMock:
    """Mock EmbeddingProvider for tests that don't need real Ollama."""
    mock = MagicMock(spec=EmbeddingProvider)
    mock.embed = AsyncMock(side_effect=keyword_vector)
    mock.has_fallback = False
    return mock


@pytest.fixture(name="pipeline")
def pipeline_fixture(engine, settings, mock_provider) -> SimpleNamespace:
    """All pipeline services wired over the test engine."""
    state = SimpleNamespace()
    init_pipeline(state, engine, settings, provider=mock_provider)
    return state


@pytest.fixture(name="context")
def context_fixture(engine, settings, pipeline, mock_provider) -> JobContext:
    """Handler context sharing the pipeline's queue and embedding store."""
    return JobContext(
        engine=engine,
        settings=settings,
        queue=pipeline.job_queue,
        provider=mock_provider,
        embeddings=pipeline.embedding_store,
    )


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client_no_auth")
def client_no_auth_fixture(session, engine, settings, mock_provider):
    """TestClient with DB and pipeline bound to the test engine, no token."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as tc:
        # Lifespan wired the module engine; rebind to the test database.
        init_pipeline(fastapi_app.state, engine, settings, provider=mock_provider)
        yield tc
    fastapi_app.dependency_overrides.clear()


@pytest.fixture(name="client")
def client_fixture(client_no_auth):
    """TestClient carrying a valid access token for TEST_USER."""
    client_no_auth.headers.update(auth_headers())
    yield client_no_auth


@pytest.fixture(name="cron_headers")
def cron_headers_fixture() -> dict[str, str]:
    return {"Authorization": "Bearer test-cron-secret"}


