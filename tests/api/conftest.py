"""
tests/api/conftest.py

Shared fixtures for API route tests.

The `client` fixture:
  - Patches the startup/shutdown infrastructure calls (Postgres, Redis) so
    no running services are required; the lifespan still builds its own
    registry and executor against a mock session factory.
  - Overrides get_registry / get_executor with an in-memory registry of
    fake adapters and an executor writing to a list-backed store.
  - Overrides get_redis with a dict-backed Redis double and get_db with an
    AsyncMock session.
  - Leaves require_api_key using the real implementation; tests that need
    an authenticated client send the default "changeme" key (matches
    settings.api_key default).
  - Clears dependency_overrides after each test to avoid cross-test leakage.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from sellerlens.api.routes import get_executor, get_registry
from sellerlens.database.postgres import get_db
from sellerlens.database.redis import get_redis
from sellerlens.main import app
from sellerlens.query.executor import DagExecutor
from sellerlens.query.plan import SourceType
from sellerlens.sources.federation import FederatedFetchCoordinator
from tests.fakes import FakeAdapter, FakeRedis, ListExecutionStore, make_events, make_registry

# Default API key that matches settings.api_key default value.
VALID_API_KEY = "changeme"


@pytest.fixture()
def registry():
    return make_registry(
        FakeAdapter(SourceType.RING_BUFFER, make_events(30)),
        FakeAdapter(SourceType.AGGREGATE_STORE, healthy=False),
    )


@pytest.fixture()
def store() -> ListExecutionStore:
    return ListExecutionStore()


@pytest.fixture()
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def client(registry, store, redis) -> TestClient:  # type: ignore[return]
    """
    Return a TestClient with all infrastructure dependencies mocked.

    Yields inside a context manager so lifespan patches are active for the
    full duration of each test, and dependency_overrides are cleared on exit.
    """
    executor = DagExecutor(FederatedFetchCoordinator(registry, timeout_seconds=1.0), store)

    async def _mock_get_db():
        yield AsyncMock()

    async def _mock_get_redis():
        yield redis

    app.dependency_overrides[get_db] = _mock_get_db
    app.dependency_overrides[get_redis] = _mock_get_redis
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_executor] = lambda: executor

    with (
        patch("sellerlens.main.init_postgres"),
        patch("sellerlens.main.init_redis"),
        patch("sellerlens.main.close_postgres"),
        patch("sellerlens.main.close_redis"),
        patch("sellerlens.main.get_session_factory", return_value=MagicMock()),
    ):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c

    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": VALID_API_KEY}
