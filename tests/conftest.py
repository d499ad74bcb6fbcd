"""Shared test fixtures for the hotel booking API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.config import Settings
from backend.main import create_app
from backend.services.rate_limit_service import DEFAULT_ENDPOINT_LIMITS, EndpointClassLimit

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
ADMIN_PASSWORD = "Admin-Pass-123"

# Lifts every ceiling far above what a single test issues, so only the
# rate-limit tests themselves ever see a 429.
GENEROUS_LIMITS = {
    name: EndpointClassLimit(burst_limit=1000, per_minute_limit=5000, daily_limit=50_000)
    for name in DEFAULT_ENDPOINT_LIMITS
}


class ManualClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@asynccontextmanager
async def create_test_app(
    settings: Settings,
) -> AsyncGenerator[tuple[FastAPI, AsyncClient]]:
    """Create an app plus HTTP test client with fully initialized state.

    Manually performs the work of the application lifespan (DB schema,
    security services, admin user) because ASGITransport does not trigger it.
    """
    from backend.database import create_engine as create_db_engine
    from backend.database import create_schema
    from backend.main import install_security_services
    from backend.services.auth_service import ensure_admin_user

    app = create_app(settings)
    settings.validate_runtime_security()

    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory

    await create_schema(engine)
    install_security_services(app, session_factory)

    async with session_factory() as session:
        await ensure_admin_user(session, settings)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield app, ac

    await engine.dispose()


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app."""
    async with create_test_app(settings) as (_app, ac):
        yield ac


async def login(client: AsyncClient, username: str, password: str) -> str:
    """Log in without 2FA and return the bearer token."""
    resp = await client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    token = resp.json()["access_token"]
    assert token
    return str(token)


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        admin_username="admin",
        admin_password=ADMIN_PASSWORD,
        rate_limit_classes=GENEROUS_LIMITS,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with all tables."""
    from backend.database import create_schema

    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
