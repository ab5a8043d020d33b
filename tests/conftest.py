"""Shared pytest fixtures for API, repository and ingestion tests."""

import os

# must be set before app.config caches the settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["GEO_LOOKUP_ENABLED"] = "false"

from collections.abc import AsyncGenerator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401
from app.config import get_settings
from app.database import Base, get_db
from app.dependencies import ServiceManager, get_service_manager
from app.ingestion import ClickIngestionWorker, ClickQueue
from app.main import app
from app.redis import get_redis

settings = get_settings()


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    # file backed so the worker and concurrent sessions share one database
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def mock_redis() -> AsyncMock:
    """Redis stand-in that always misses."""
    client = AsyncMock(spec=redis.Redis)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    return client


@pytest_asyncio.fixture(scope="function")
async def service_manager() -> ServiceManager:
    manager = await get_service_manager()
    manager.click_queue = ClickQueue(settings.CLICK_QUEUE_CAPACITY)
    return manager


@pytest.fixture(scope="function")
def click_worker(
    service_manager: ServiceManager, session_factory: async_sessionmaker[AsyncSession]
) -> ClickIngestionWorker:
    """Worker bound to the test database; call ``drain()`` to persist queued clicks."""
    return ClickIngestionWorker(service_manager.click_queue, session_factory)


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession, mock_redis: AsyncMock, service_manager: ServiceManager
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> redis.Redis:
        return mock_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
