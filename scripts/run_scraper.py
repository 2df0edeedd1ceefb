"""Manual scraper runner.

Runs every active source, or a single source, against the configured
database and prints a summary followed by the latest run of each source.

Usage:
    python scripts/run_scraper.py
    python scripts/run_scraper.py --concurrency 5
    python scripts/run_scraper.py "SPAR Albania"
    python scripts/run_scraper.py "SPAR Albania" --categories=pije,ushqimore
    python scripts/run_scraper.py "SPAR Albania" --list-categories
    python scripts/run_scraper.py --schedule
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from pricewatch.config import settings
from pricewatch.core.logging import configure_logging
from pricewatch.db.session import async_session_factory, engine
from pricewatch.db.utils import check_database_health, init_db
from pricewatch.scrapers.register_adapters import register_all_adapters
from pricewatch.scrapers.scheduler import ScraperScheduler
from pricewatch.scrapers.scraper_service import RunOptions, ScrapeResult, ScrapeStatus, ScraperService
from pricewatch.services.run_log_service import RunLogService

BAR = "=" * 70


async def list_categories(service: ScraperService, identifier: str) -> int:
    """Print the categories of a source (or of an adapter id)."""
    source = await service.get_source(identifier)
    adapter_id = source.adapter_id if source is not None else identifier

    if not service.adapter_factory.has_adapter(adapter_id):
        print(f"\nError: unknown source or adapter '{identifier}'")
        print("\nRegistered adapters:")
        for name in sorted(service.adapter_factory.get_registered_adapters()):
            print(f"   - {name}")
        return 1

    title = source.name if source is not None else adapter_id
    print(f"\n{BAR}\n  Categories for {title}\n{BAR}")
    for category in service.adapter_factory.get_categories(adapter_id):
        print(f"  {category.id:<28} {category.name}")
    print()
    return 0


def print_summary(results: List[ScrapeResult]) -> None:
    print(f"\n{BAR}\n  Summary\n{BAR}")
    for result in results:
        name = result.source_name or str(result.source_id)
        print(
            f"  {name:<24} {result.status.value:<8} "
            f"scraped={result.products_scraped:<6} failed={result.products_failed:<5} "
            f"{result.duration:.1f}s"
        )
        for error in result.errors[:3]:
            print(f"      ! {error[:100]}")

    print(BAR)
    print(f"  Sources: {len(results)}")
    print(f"  Succeeded: {sum(1 for r in results if r.status == ScrapeStatus.SUCCESS)}")
    print(f"  Failed: {sum(1 for r in results if r.status == ScrapeStatus.FAILED)}")
    print(f"  Products scraped: {sum(r.products_scraped for r in results)}")
    print(f"{BAR}\n")


async def print_latest_stats(run_logs: RunLogService) -> None:
    latest = await run_logs.get_latest_per_source()
    if not latest:
        return

    print(f"{BAR}\n  Latest run per source\n{BAR}")
    for run_log in latest:
        completed = run_log.completed_at.isoformat() if run_log.completed_at else "-"
        print(
            f"  {str(run_log.source_id)[:8]}  {run_log.run_id or '-':<12} {run_log.status:<8} "
            f"scraped={run_log.products_scraped:<6} failed={run_log.products_failed:<5} {completed}"
        )
    print(f"{BAR}\n")


async def run_scheduler(concurrency: Optional[int]) -> int:
    scheduler = ScraperScheduler(async_session_factory, concurrency=concurrency)
    scheduler.start()
    print(f"Scheduler running with cron '{scheduler.cron}'. Press Ctrl+C to stop.")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
    return 0


async def main_async(args: argparse.Namespace) -> int:
    health = await check_database_health(engine)
    if not health["healthy"]:
        print(f"\nError: database unavailable: {health['error']}")
        await engine.dispose()
        return 1

    await init_db(engine)
    register_all_adapters()

    try:
        if args.schedule:
            return await run_scheduler(args.concurrency)

        service = ScraperService(async_session_factory)

        if args.list_categories:
            if not args.source:
                print("\nError: --list-categories needs a source")
                return 2
            return await list_categories(service, args.source)

        options = RunOptions(
            category_ids=args.categories,
            timeout_seconds=args.timeout,
        )

        print(f"\n{BAR}")
        if args.source:
            print(f"  Running source: {args.source}")
            if args.categories:
                print(f"  Categories: {', '.join(args.categories)}")
        else:
            print(f"  Running all active sources (concurrency={args.concurrency or settings.SCRAPER_CONCURRENCY})")
        print(BAR)

        if args.source:
            results = [await service.run_one(args.source, options)]
        else:
            results = await service.run_all(args.concurrency, options)

        print_summary(results)
        await print_latest_stats(service.run_logs)
        return 1 if any(r.status == ScrapeStatus.FAILED for r in results) else 0
    finally:
        await engine.dispose()


def _category_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def main():
    """Parse arguments and run the scraper."""
    parser = argparse.ArgumentParser(
        description="Scrape grocery prices from configured sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "source",
        nargs="?",
        help="Source id or name; omit to run every active source",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help=f"Sources scraped in parallel (default: {settings.SCRAPER_CONCURRENCY})",
    )
    parser.add_argument(
        "--categories",
        type=_category_list,
        default=None,
        help="Comma-separated category ids to scrape",
    )
    parser.add_argument(
        "--list-categories",
        action="store_true",
        help="List the categories of the given source and exit",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Abort a source run after this many seconds",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Run on the SCRAPE_CRON schedule instead of once",
    )
    args = parser.parse_args()

    configure_logging()
    try:
        sys.exit(asyncio.run(main_async(args)))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
