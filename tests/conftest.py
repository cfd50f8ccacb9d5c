"""Shared test fixtures.

Provides:
- Settings with an API key and without live integration credentials
- A fake async session factory for repository-backed services
- An httpx AsyncClient bound to the ASGI app (lifespan is not run, so
  tests install their own services and scheduler on app.state)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.config import get_settings

TEST_API_KEY = "test-ops-key"


@pytest.fixture(autouse=True)
def _settings_env(monkeypatch):
    """Pin settings to a known state and reset the cache around each test."""
    monkeypatch.setenv("OPS_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("SENTRY_DSN", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_session():
    """An AsyncSession stand-in with awaitable execute/commit."""
    session = MagicMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.refresh = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def session_factory(fake_session):
    """Mirrors ``get_session``: an async generator yielding one session."""

    async def factory():
        yield fake_session

    return factory


@pytest.fixture
def app():
    from src.app.main import create_app

    application = create_app()
    application.state.services = None
    application.state.scheduler = None
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-API-Key": TEST_API_KEY},
    ) as ac:
        yield ac
