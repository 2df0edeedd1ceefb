"""In-process adapters used by the adapter and orchestrator tests."""

import asyncio
from typing import FrozenSet, List, Tuple

from pricewatch.core.exceptions import TransientFetchError
from pricewatch.scrapers.base import AdapterConfig, BaseAdapter, CategoryConfig, PageResult, WaitTimes
from pricewatch.scrapers.utils.retry import RetryPolicy

NO_WAIT = WaitTimes(between_requests=0, between_categories=0, jitter=0)
NO_BACKOFF = RetryPolicy(max_retries=2, initial_delay=0, backoff_factor=2.0, max_delay=0)

# scraper_config that keeps factory-built fakes fast
FAST_SOURCE_CONFIG = {"retry_initial_delay": 0, "retry_max_delay": 0, "max_retries": 1}


class FakeAdapter(BaseAdapter):
    """Serves `pages_per_category` pages of `listings_per_page` listings per category."""

    adapter_id = "fake"
    adapter_type = "api"
    default_base_url = "https://fake.example"
    default_currency = "EUR"
    default_wait_times = NO_WAIT
    default_categories = (
        CategoryConfig("dairy", "Dairy", "/dairy"),
        CategoryConfig("bakery", "Bakery", "/bakery"),
    )
    pages_per_category = 2
    listings_per_page = 3
    failing_categories: FrozenSet[str] = frozenset()

    def __init__(self, config: AdapterConfig, log=None):
        super().__init__(config, log)
        self.opened = False
        self.closed = False
        self.fetched: List[Tuple[str, int]] = []

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        self.fetched.append((category.id, page_number))
        if category.id in self.failing_categories:
            raise TransientFetchError("HTTP 503 from fake", status_code=503)

        listings = []
        for index in range(self.listings_per_page):
            listing = self.build_listing(
                name=f"{category.name} item {page_number}-{index} 500g",
                price="1.99",
                product_url=f"{self.config.base_url}/{category.id}/{page_number}/{index}",
                external_id=f"{category.id}-{page_number}-{index}",
            )
            if listing:
                listings.append(listing)
        return PageResult(listings=listings, has_more=page_number < self.pages_per_category)


class BrokenInitAdapter(FakeAdapter):
    adapter_id = "fake_broken"

    async def open(self) -> None:
        raise RuntimeError("browser failed to launch")


class WindowedAdapter(FakeAdapter):
    """Later pages answer faster, so fetch-ahead finishes out of order."""

    adapter_id = "fake_windowed"
    supports_parallel_pages = True
    pages_per_category = 5

    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        await asyncio.sleep(0.01 * max(0, 6 - page_number))
        return await super().fetch_page(category, page_number)


class RejectedFirstPageAdapter(FakeAdapter):
    """Every record on page 1 is unpriced; later pages are normal."""

    adapter_id = "fake_rejected_first_page"
    supports_parallel_pages = True
    pages_per_category = 3

    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        if page_number > 1:
            return await super().fetch_page(category, page_number)
        self.fetched.append((category.id, page_number))
        listings = []
        for index in range(self.listings_per_page):
            listing = self.build_listing(
                name=f"{category.name} unpriced {index}",
                price=None,
                product_url=f"{self.config.base_url}/{category.id}/1/{index}",
            )
            if listing:
                listings.append(listing)
        return PageResult(listings=listings, has_more=True)


class HangingAdapter(FakeAdapter):
    adapter_id = "fake_hanging"

    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        await asyncio.sleep(3600)
        raise AssertionError("unreachable")


def make_config(adapter_class=FakeAdapter, **overrides) -> AdapterConfig:
    values = dict(
        adapter_id=adapter_class.adapter_id,
        source_name="Fake Market",
        currency="EUR",
        base_url="https://fake.example",
        categories=list(adapter_class.default_categories),
        retry_policy=NO_BACKOFF,
        wait_times=NO_WAIT,
        timeout_seconds=5.0,
    )
    values.update(overrides)
    return AdapterConfig(**values)


class FailingFetchAdapter(FakeAdapter):
    adapter_id = "fake_failing"
    failing_categories = frozenset({"dairy", "bakery"})


class ConcurrencyProbeAdapter(FakeAdapter):
    """Records how many instances are between open() and close() at once."""

    adapter_id = "fake_probe"
    active = 0
    peak = 0

    async def open(self) -> None:
        cls = type(self)
        cls.active += 1
        cls.peak = max(cls.peak, cls.active)

    async def close(self) -> None:
        type(self).active -= 1

    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        await asyncio.sleep(0.02)
        return await super().fetch_page(category, page_number)
