"""Tests for the cron scheduler wrapper."""

import pytest

from pricewatch.scrapers.factory import AdapterFactory
from pricewatch.scrapers.scheduler import SCRAPE_JOB_ID, ScraperScheduler
from pricewatch.scrapers.scraper_service import ScrapeStatus

from fake_adapters import FAST_SOURCE_CONFIG, FakeAdapter


@pytest.fixture
def scheduler(file_session_factory) -> ScraperScheduler:
    factory = AdapterFactory()
    factory.register_adapter(FakeAdapter.adapter_id, FakeAdapter)
    return ScraperScheduler(file_session_factory, cron="30 2 * * *", concurrency=2, adapter_factory=factory)


class TestScraperScheduler:
    """Tests for ScraperScheduler."""

    async def test_start_registers_cron_job(self, scheduler):
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(SCRAPE_JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            status = scheduler.get_jobs_status()
            assert status["cron"] == "30 2 * * *"
            assert status["next_run"] is not None
        finally:
            scheduler.stop()

    async def test_manual_trigger_runs_all_sources(self, scheduler, file_session_factory, make_source):
        await make_source(file_session_factory, name="Market A", scraper_config=FAST_SOURCE_CONFIG)
        await make_source(file_session_factory, name="Market B", scraper_config=FAST_SOURCE_CONFIG)

        results = await scheduler.trigger_manual_scrape()

        assert [r.status for r in results] == [ScrapeStatus.SUCCESS, ScrapeStatus.SUCCESS]
        assert not scheduler.is_running

    async def test_manual_trigger_for_one_source(self, scheduler, file_session_factory, make_source):
        await make_source(file_session_factory, name="Market A", scraper_config=FAST_SOURCE_CONFIG)

        results = await scheduler.trigger_manual_scrape("Market A")

        assert len(results) == 1
        assert results[0].source_name == "Market A"

    async def test_overlapping_run_is_skipped(self, scheduler):
        scheduler._run_in_progress = True
        assert await scheduler.trigger_manual_scrape() is None
