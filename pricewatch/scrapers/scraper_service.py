"""Scrape orchestration service.

Runs one source end to end (config lookup -> run log -> adapter lifecycle
-> result) and runs every active source under a bounded worker pool.
Adapter, category and record errors are turned into counts here; only a
structured ScrapeResult leaves this module.
"""

import asyncio
import enum
import time
import traceback
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import settings
from pricewatch.core.exceptions import ConfigurationError, PriceWatchException
from pricewatch.models.source import Source
from pricewatch.scrapers.base import BaseAdapter, ListingData, PageInfo
from pricewatch.scrapers.factory import AdapterFactory, get_adapter_factory
from pricewatch.scrapers.utils.normalizer import generate_run_id
from pricewatch.services.product_service import ProductService
from pricewatch.services.run_log_service import RunLogService

logger = structlog.get_logger(__name__)


class ScrapeStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # inactive source; no run log written


@dataclass
class RunOptions:
    """Per-invocation knobs for run_one / run_all."""

    category_ids: Optional[Sequence[str]] = None
    timeout_seconds: Optional[float] = None


@dataclass
class ScrapeResult:
    source_id: Optional[uuid.UUID]
    status: ScrapeStatus
    products_scraped: int = 0
    products_failed: int = 0
    duration: float = 0.0
    errors: List[str] = field(default_factory=list)
    run_log_id: Optional[uuid.UUID] = None
    run_id: Optional[str] = None
    source_name: Optional[str] = None


class ScraperService:
    """Bridges adapters, the reconciliation engine and run history.

    Each run_one call builds its own adapter and its own bound logger;
    concurrently running sources share only the session factory.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapter_factory: Optional[AdapterFactory] = None,
        log=None,
    ):
        """Initialize scraper service.

        Args:
            session_factory: Async session factory for database access
            adapter_factory: Adapter registry (defaults to the global one)
            log: Logger to bind run context onto
        """
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory or get_adapter_factory()
        self.logger = (log or logger).bind(service="scraper_service")
        self.run_logs = RunLogService(session_factory, log=self.logger)

    async def get_source(self, identifier: Union[uuid.UUID, str]) -> Optional[Source]:
        """Look a source up by id, or by case-insensitive name."""
        source_uuid: Optional[uuid.UUID] = None
        if isinstance(identifier, uuid.UUID):
            source_uuid = identifier
        else:
            try:
                source_uuid = uuid.UUID(str(identifier))
            except ValueError:
                source_uuid = None

        async with self.session_factory() as session:
            if source_uuid is not None:
                return await session.get(Source, source_uuid)
            result = await session.execute(
                select(Source).where(func.lower(Source.name) == str(identifier).lower())
            )
            return result.scalar_one_or_none()

    async def list_active_sources(self) -> List[Source]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Source).where(Source.is_active.is_(True)).order_by(Source.name)
            )
            return list(result.scalars().all())

    async def run_one(
        self,
        source_id: Union[uuid.UUID, str],
        options: Optional[RunOptions] = None,
    ) -> ScrapeResult:
        """Run one source end to end.

        Unknown sources and unregistered adapters fail before any run log is
        written; inactive sources are skipped without one. Otherwise a
        'running' log is created, the adapter is initialized, scraped and
        cleaned up (cleanup always runs), and the log is finalized once.

        Args:
            source_id: Source UUID or name
            options: Category filter and optional run timeout

        Returns:
            ScrapeResult; never raises for adapter, category or record errors
        """
        options = options or RunOptions()
        run_id = generate_run_id()
        log = self.logger.bind(run_id=run_id, source_id=str(source_id))

        try:
            source = await self.get_source(source_id)
        except Exception as e:
            log.error("source_lookup_failed", error=str(e), exc_info=True)
            return ScrapeResult(
                source_id=None,
                status=ScrapeStatus.FAILED,
                errors=[f"Source lookup failed: {type(e).__name__}: {e}"],
                run_id=run_id,
            )
        if source is None:
            error = ConfigurationError(f"Source not found: {source_id}")
            log.error("source_not_found")
            return ScrapeResult(source_id=None, status=ScrapeStatus.FAILED, errors=[error.message], run_id=run_id)

        log = log.bind(source_id=str(source.id), source_name=source.name)
        if not source.is_active:
            log.info("source_inactive_skipped")
            return ScrapeResult(
                source_id=source.id,
                status=ScrapeStatus.SKIPPED,
                run_id=run_id,
                source_name=source.name,
            )

        try:
            adapter = self.adapter_factory.create_adapter(source, log=log)
        except ConfigurationError as e:
            log.error("adapter_not_configured", adapter_id=source.adapter_id, error=e.message)
            return ScrapeResult(
                source_id=source.id,
                status=ScrapeStatus.FAILED,
                errors=[e.message],
                run_id=run_id,
                source_name=source.name,
            )

        try:
            run_log = await self.run_logs.start(source.id, run_id=run_id)
        except Exception as e:
            log.error("run_log_start_failed", error=str(e), exc_info=True)
            await adapter.cleanup()
            return ScrapeResult(
                source_id=source.id,
                status=ScrapeStatus.FAILED,
                errors=[f"Run log not started: {type(e).__name__}: {e}"],
                run_id=run_id,
                source_name=source.name,
            )
        log.info("run_started", run_log_id=str(run_log.id), adapter_id=source.adapter_id)

        product_service = ProductService(self.session_factory, log=log)
        persistence_failed = 0

        async def on_page_scraped(listings: List[ListingData], page: PageInfo) -> int:
            nonlocal persistence_failed
            batch = await product_service.save_listings(listings, source.id, source.currency)
            persistence_failed += batch.failed
            return batch.saved

        adapter.set_page_callback(on_page_scraped)

        started = time.monotonic()
        timeout = options.timeout_seconds or settings.SCRAPER_RUN_TIMEOUT_SECONDS
        success = False
        error_message: Optional[str] = None
        error_traceback: Optional[str] = None

        try:
            await asyncio.wait_for(self._drive(adapter, options), timeout=timeout)
            success = not self._all_categories_failed(adapter, options)
            if not success:
                error_message = "Every category failed"
        except asyncio.TimeoutError:
            error_message = f"Run exceeded {timeout}s"
            log.error("run_timed_out", timeout_seconds=timeout)
        except Exception as e:
            error_message = e.message if isinstance(e, PriceWatchException) else f"{type(e).__name__}: {e}"
            error_traceback = traceback.format_exc()
            log.error("run_failed", error=error_message, exc_info=True)
        finally:
            await adapter.cleanup()
            if not success and error_message is None:
                error_message = "Run cancelled"
            result = await self._finalize(
                adapter, run_log.id, success, persistence_failed, started,
                error_message, error_traceback, log,
            )

        result.run_id = run_id
        result.source_id = source.id
        result.source_name = source.name
        return result

    async def _drive(self, adapter: BaseAdapter, options: RunOptions) -> None:
        await adapter.initialize()
        await adapter.scrape_product_list(options.category_ids)

    def _all_categories_failed(self, adapter: BaseAdapter, options: RunOptions) -> bool:
        attempted = len(adapter.select_categories(options.category_ids))
        return attempted > 0 and adapter.stats.categories_failed >= attempted

    async def _finalize(
        self,
        adapter: BaseAdapter,
        run_log_id: uuid.UUID,
        success: bool,
        persistence_failed: int,
        started: float,
        error_message: Optional[str],
        error_traceback: Optional[str],
        log,
    ) -> ScrapeResult:
        stats = adapter.stats
        duration = time.monotonic() - started
        products_failed = stats.products_failed + persistence_failed
        errors = [e.message for e in stats.errors]
        if error_message and error_message not in errors:
            errors.append(error_message)

        try:
            await self.run_logs.finish(
                run_log_id,
                success=success,
                products_scraped=stats.products_scraped,
                products_failed=products_failed,
                duration_seconds=duration,
                error_message=error_message,
                error_traceback=error_traceback,
            )
        except Exception as e:
            log.error("run_log_finalize_failed", run_log_id=str(run_log_id), error=str(e))
            errors.append(f"Run log not finalized: {e}")

        log.info(
            "run_finished",
            status=ScrapeStatus.SUCCESS.value if success else ScrapeStatus.FAILED.value,
            products_scraped=stats.products_scraped,
            products_failed=products_failed,
            duration_seconds=round(duration, 2),
        )
        return ScrapeResult(
            source_id=adapter.config.source_id,
            status=ScrapeStatus.SUCCESS if success else ScrapeStatus.FAILED,
            products_scraped=stats.products_scraped,
            products_failed=products_failed,
            duration=duration,
            errors=errors,
            run_log_id=run_log_id,
        )

    async def run_all(
        self,
        concurrency: Optional[int] = None,
        options: Optional[RunOptions] = None,
    ) -> List[ScrapeResult]:
        """Run every active source with at most `concurrency` in flight.

        Workers pull from a shared FIFO queue. A source that blows up is
        recorded as FAILED and never cancels its siblings.

        Returns:
            One result per source, in queue order
        """
        concurrency = max(1, concurrency or settings.SCRAPER_CONCURRENCY)
        sources = await self.list_active_sources()
        self.logger.info("run_all_started", sources=len(sources), concurrency=concurrency)

        queue: asyncio.Queue = asyncio.Queue()
        for index, source in enumerate(sources):
            queue.put_nowait((index, source.id, source.name))
        results: List[Optional[ScrapeResult]] = [None] * len(sources)

        async def worker(worker_id: int) -> None:
            while True:
                try:
                    index, source_id, source_name = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    results[index] = await self.run_one(source_id, options)
                except Exception as e:
                    self.logger.error(
                        "source_run_crashed",
                        worker=worker_id,
                        source_id=str(source_id),
                        error=str(e),
                        exc_info=True,
                    )
                    results[index] = ScrapeResult(
                        source_id=source_id,
                        status=ScrapeStatus.FAILED,
                        errors=[f"{type(e).__name__}: {e}"],
                        source_name=source_name,
                    )
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker(i)) for i in range(min(concurrency, len(sources)))]
        if workers:
            await asyncio.gather(*workers)

        finished = [r for r in results if r is not None]
        self.logger.info(
            "run_all_finished",
            sources=len(finished),
            succeeded=sum(1 for r in finished if r.status == ScrapeStatus.SUCCESS),
            failed=sum(1 for r in finished if r.status == ScrapeStatus.FAILED),
            products_scraped=sum(r.products_scraped for r in finished),
        )
        return finished
