"""APScheduler-based scraping scheduler.

Fires one full run over every active source on a cron schedule (daily by
default). A tick that arrives while a previous run is still going is
skipped, and manual triggers obey the same single-flight rule.
"""

from typing import List, Optional, Union
import uuid

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import settings
from pricewatch.scrapers.factory import AdapterFactory
from pricewatch.scrapers.scraper_service import RunOptions, ScrapeResult, ScraperService

logger = structlog.get_logger(__name__)

SCRAPE_JOB_ID = "scrape_all_sources"


class ScraperScheduler:
    """Runs ScraperService.run_all on a cron schedule.

    This scheduler:
    - Registers a single cron job for all active sources
    - Skips a tick while a run is already in progress
    - Exposes a manual trigger for one source or all of them
    """

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        cron: Optional[str] = None,
        concurrency: Optional[int] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ):
        """Initialize scraper scheduler.

        Args:
            db_session_factory: Async session factory for database access
            cron: Crontab expression (defaults to settings.SCRAPE_CRON)
            concurrency: Sources scraped in parallel per run
            adapter_factory: Adapter registry passed to the scraper service
        """
        self.cron = cron or settings.SCRAPE_CRON
        self.concurrency = concurrency or settings.SCRAPER_CONCURRENCY
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="scraper_scheduler")
        self.scraper_service = ScraperService(
            db_session_factory, adapter_factory=adapter_factory, log=self.logger
        )
        self._run_in_progress = False

    def start(self) -> None:
        """Register the cron job and start the scheduler."""
        if self.scheduler.running:
            self.logger.warning("scheduler_already_running")
            return

        self.scheduler.add_job(
            func=self._scheduled_run,
            trigger=CronTrigger.from_crontab(self.cron, timezone="UTC"),
            id=SCRAPE_JOB_ID,
            name="Scrape all active sources",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        job = self.scheduler.get_job(SCRAPE_JOB_ID)
        self.logger.info(
            "scheduler_started",
            cron=self.cron,
            next_run=job.next_run_time.isoformat() if job and job.next_run_time else None,
        )

    def stop(self) -> None:
        """Stop the scheduler, waiting for a running job to finish."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            self.logger.info("scheduler_stopped")
        else:
            self.logger.warning("scheduler_not_running")

    @property
    def is_running(self) -> bool:
        """True while a scrape run (scheduled or manual) is in progress."""
        return self._run_in_progress

    async def _scheduled_run(self) -> None:
        # APScheduler must never see an exception from the job
        try:
            await self.trigger_manual_scrape()
        except Exception as e:
            self.logger.error("scheduled_scrape_failed", error=str(e), exc_info=True)

    async def trigger_manual_scrape(
        self,
        source: Optional[Union[uuid.UUID, str]] = None,
        options: Optional[RunOptions] = None,
    ) -> Optional[List[ScrapeResult]]:
        """Run one source, or all active sources, now.

        Args:
            source: Source id or name; None runs every active source
            options: Category filter and run timeout

        Returns:
            Results of the run, or None if another run was in progress
        """
        if self._run_in_progress:
            self.logger.warning("scrape_skipped_run_in_progress", source=str(source) if source else None)
            return None

        self._run_in_progress = True
        try:
            if source is None:
                return await self.scraper_service.run_all(self.concurrency, options)
            return [await self.scraper_service.run_one(source, options)]
        finally:
            self._run_in_progress = False

    def get_jobs_status(self) -> dict:
        job = self.scheduler.get_job(SCRAPE_JOB_ID)
        return {
            "cron": self.cron,
            "scheduler_running": self.scheduler.running,
            "run_in_progress": self._run_in_progress,
            "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
        }
