"""Tests for run orchestration: single runs, failures and the worker pool."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from pricewatch.models import Price, Product, RunLog
from pricewatch.scrapers.factory import AdapterFactory
from pricewatch.scrapers.scraper_service import RunOptions, ScrapeStatus, ScraperService

from fake_adapters import (
    FAST_SOURCE_CONFIG,
    BrokenInitAdapter,
    ConcurrencyProbeAdapter,
    FailingFetchAdapter,
    FakeAdapter,
    HangingAdapter,
)


@pytest.fixture
def adapter_factory() -> AdapterFactory:
    factory = AdapterFactory()
    for adapter_class in (FakeAdapter, BrokenInitAdapter, FailingFetchAdapter, HangingAdapter, ConcurrencyProbeAdapter):
        factory.register_adapter(adapter_class.adapter_id, adapter_class)
    return factory


@pytest.fixture
def service(file_session_factory, adapter_factory) -> ScraperService:
    return ScraperService(file_session_factory, adapter_factory=adapter_factory)


async def run_logs(factory):
    async with factory() as session:
        return list((await session.execute(select(RunLog))).scalars().all())


async def count(factory, model) -> int:
    async with factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestRunOne:
    """Tests for ScraperService.run_one."""

    async def test_successful_run(self, service, file_session_factory, make_source):
        source = await make_source(file_session_factory, scraper_config=FAST_SOURCE_CONFIG)

        result = await service.run_one(source.id)

        assert result.status == ScrapeStatus.SUCCESS
        assert result.products_scraped == 12
        assert result.products_failed == 0
        assert result.run_id.startswith("run-")
        assert await count(file_session_factory, Product) == 12
        assert await count(file_session_factory, Price) == 12

        (run_log,) = await run_logs(file_session_factory)
        assert run_log.id == result.run_log_id
        assert run_log.status == "success"
        assert run_log.products_scraped == 12
        assert run_log.run_id == result.run_id
        assert run_log.completed_at is not None

    async def test_run_by_name_with_category_filter(self, service, file_session_factory, make_source):
        await make_source(file_session_factory, name="Corner Shop", scraper_config=FAST_SOURCE_CONFIG)

        result = await service.run_one("corner shop", RunOptions(category_ids=["bakery"]))

        assert result.status == ScrapeStatus.SUCCESS
        assert result.products_scraped == 6
        assert result.source_name == "Corner Shop"

    async def test_inactive_source_is_skipped_without_run_log(self, service, file_session_factory, make_source):
        source = await make_source(file_session_factory, is_active=False)

        result = await service.run_one(source.id)

        assert result.status == ScrapeStatus.SKIPPED
        assert await run_logs(file_session_factory) == []

    async def test_unknown_source_fails_without_run_log(self, service, file_session_factory):
        result = await service.run_one("No Such Market")

        assert result.status == ScrapeStatus.FAILED
        assert "No Such Market" in result.errors[0]
        assert await run_logs(file_session_factory) == []

    async def test_storage_error_during_lookup_becomes_failed_result(self, service, monkeypatch):
        async def broken_lookup(identifier):
            raise OperationalError("SELECT sources", {}, Exception("database is locked"))

        monkeypatch.setattr(service, "get_source", broken_lookup)

        result = await service.run_one("Any Market")

        assert result.status == ScrapeStatus.FAILED
        assert result.run_log_id is None
        assert "database is locked" in result.errors[0]

    async def test_storage_error_starting_run_log_becomes_failed_result(
        self, service, file_session_factory, make_source, monkeypatch
    ):
        source = await make_source(file_session_factory, scraper_config=FAST_SOURCE_CONFIG)

        async def broken_start(source_id, run_id=None):
            raise OperationalError("INSERT INTO run_logs", {}, Exception("disk I/O error"))

        monkeypatch.setattr(service.run_logs, "start", broken_start)

        result = await service.run_one(source.id)

        assert result.status == ScrapeStatus.FAILED
        assert result.source_id == source.id
        assert "disk I/O error" in result.errors[0]
        assert await run_logs(file_session_factory) == []
        assert await count(file_session_factory, Product) == 0

    async def test_unregistered_adapter_fails_without_run_log(self, service, file_session_factory, make_source):
        source = await make_source(file_session_factory, adapter_id="not_registered")

        result = await service.run_one(source.id)

        assert result.status == ScrapeStatus.FAILED
        assert await run_logs(file_session_factory) == []

    async def test_initialize_failure_is_recorded(self, service, file_session_factory, make_source):
        source = await make_source(file_session_factory, adapter_id="fake_broken")

        result = await service.run_one(source.id)

        assert result.status == ScrapeStatus.FAILED
        (run_log,) = await run_logs(file_session_factory)
        assert run_log.status == "failed"
        assert "browser failed to launch" in run_log.error_message
        assert run_log.error_traceback

    async def test_every_category_failing_fails_the_run(self, service, file_session_factory, make_source):
        source = await make_source(file_session_factory, adapter_id="fake_failing", scraper_config=FAST_SOURCE_CONFIG)

        result = await service.run_one(source.id)

        assert result.status == ScrapeStatus.FAILED
        assert result.products_failed == 2
        (run_log,) = await run_logs(file_session_factory)
        assert run_log.status == "failed"
        assert run_log.products_failed == 2

    async def test_run_timeout_fails_the_run(self, service, file_session_factory, make_source):
        source = await make_source(file_session_factory, adapter_id="fake_hanging")

        result = await service.run_one(source.id, RunOptions(timeout_seconds=0.2))

        assert result.status == ScrapeStatus.FAILED
        (run_log,) = await run_logs(file_session_factory)
        assert run_log.status == "failed"
        assert "exceeded" in run_log.error_message


class TestRunAll:
    """Tests for ScraperService.run_all."""

    async def test_one_broken_source_does_not_affect_the_others(self, service, file_session_factory, make_source):
        for number in range(1, 6):
            await make_source(
                file_session_factory,
                name=f"Source {number}",
                adapter_id="fake_broken" if number == 3 else "fake",
                scraper_config=FAST_SOURCE_CONFIG,
            )
        await make_source(file_session_factory, name="Source 6", is_active=False)

        results = await service.run_all(concurrency=2)

        assert [r.source_name for r in results] == [f"Source {n}" for n in range(1, 6)]
        assert [r.status for r in results] == [
            ScrapeStatus.SUCCESS,
            ScrapeStatus.SUCCESS,
            ScrapeStatus.FAILED,
            ScrapeStatus.SUCCESS,
            ScrapeStatus.SUCCESS,
        ]
        logs = await run_logs(file_session_factory)
        assert len(logs) == 5
        assert all(log.is_terminal for log in logs)

    async def test_concurrency_bound(self, service, file_session_factory, make_source):
        ConcurrencyProbeAdapter.active = 0
        ConcurrencyProbeAdapter.peak = 0
        for number in range(4):
            await make_source(
                file_session_factory,
                name=f"Probe {number}",
                adapter_id="fake_probe",
                scraper_config=FAST_SOURCE_CONFIG,
            )

        results = await service.run_all(concurrency=2)

        assert len(results) == 4
        assert all(r.status == ScrapeStatus.SUCCESS for r in results)
        assert ConcurrencyProbeAdapter.peak == 2

    async def test_no_active_sources(self, service):
        assert await service.run_all(concurrency=3) == []
