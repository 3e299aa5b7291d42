"""Shared pytest fixtures for testing."""

import os
from typing import AsyncGenerator

# Settings are read at import time; point them at SQLite before cvflow loads.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import cvflow.models  # noqa: F401
from cvflow.api.deps import get_db_session
from cvflow.core.security import create_access_token
from cvflow.main import app
from cvflow.models.base import Base


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_sessionmaker(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db_session(db_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with db_sessionmaker() as session:
        yield session


# =============================================================================
# API Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(db_sessionmaker) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database wired in."""

    async def override_get_db_session():
        async with db_sessionmaker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def principal() -> str:
    return "designer@example.com"


@pytest.fixture
def auth_headers(principal) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(principal)}"}
