"""Pytest configuration and shared fixtures."""

import uuid

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pricewatch.models import Base, Source


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database; every session shares one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed SQLite database, for tests that run sources concurrently.

    Each session gets its own connection, so one session's rollback
    cannot discard another session's writes.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pricewatch.db'}",
        connect_args={"timeout": 30},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


async def create_source(factory, **overrides) -> Source:
    values = {
        "name": f"Test Market {uuid.uuid4().hex[:6]}",
        "adapter_id": "fake",
        "is_active": True,
        "currency": "EUR",
        "country_code": "DE",
        "base_url": "https://market.example",
        "scraper_config": {},
    }
    values.update(overrides)
    async with factory() as session:
        source = Source(**values)
        session.add(source)
        await session.commit()
        await session.refresh(source)
    return source


@pytest_asyncio.fixture
async def sample_source(session_factory) -> Source:
    """Create a sample source for testing."""
    return await create_source(session_factory, name="Test Market")


@pytest_asyncio.fixture
async def other_source(session_factory) -> Source:
    return await create_source(session_factory, name="Other Market", currency="EUR")


@pytest.fixture
def make_source():
    """Coroutine function creating a Source row in a given session factory."""
    return create_source
