"""Tests for database helpers and schema constraints."""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine

from pricewatch.db.session import build_engine
from pricewatch.db.utils import check_database_health, init_db
from pricewatch.models import Product, ProductMapping


@pytest.mark.asyncio
async def test_health_check_and_init_db(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'health.db'}")
    try:
        assert await check_database_health(engine) == {"healthy": True}
        await init_db(engine)
        # idempotent
        await init_db(engine)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_health_check_reports_error(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
    try:
        health = await check_database_health(engine)
    finally:
        await engine.dispose()

    assert health["healthy"] is False
    assert health["error"]


@pytest.mark.asyncio
async def test_external_id_unique_per_source(session_factory, make_source):
    source = await make_source(session_factory)

    async with session_factory() as session:
        first = Product(name="Milk 1L", normalized_name="milk 1l")
        second = Product(name="Milk 2L", normalized_name="milk 2l")
        session.add_all([first, second])
        await session.flush()
        session.add(ProductMapping(product_id=first.id, source_id=source.id, external_id="m-1", url="https://market.example/m-1"))
        await session.flush()
        session.add(ProductMapping(product_id=second.id, source_id=source.id, external_id="m-1", url="https://market.example/m-1"))
        with pytest.raises(IntegrityError):
            await session.flush()
        await session.rollback()


@pytest.mark.asyncio
async def test_one_mapping_per_product_and_source(session_factory, make_source):
    source = await make_source(session_factory)

    async with session_factory() as session:
        product = Product(name="Bread", normalized_name="bread")
        session.add(product)
        await session.flush()
        session.add(ProductMapping(product_id=product.id, source_id=source.id, external_id=None, url="https://market.example/bread"))
        await session.flush()
        session.add(ProductMapping(product_id=product.id, source_id=source.id, external_id="b-2", url="https://market.example/b-2"))
        with pytest.raises(IntegrityError):
            await session.flush()
        await session.rollback()
