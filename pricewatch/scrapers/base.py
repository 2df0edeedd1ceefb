"""Base scraper adapter interface.

Every source adapter inherits from BaseAdapter (through BaseAPIAdapter or
BaseBrowserAdapter) and implements three hooks: open(), fetch_page() and
close(). The base class owns the lifecycle state machine, the pagination
loop, the shared retry policy, request pacing and the page callback, so
adapters stay small and the orchestrator can treat them all alike.

Lifecycle:
    UNINITIALIZED -> INITIALIZED -> SCRAPING -> CLEANUP -> TERMINATED
ERRORED is reachable from any state and still goes through CLEANUP.
"""

import asyncio
import enum
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
import structlog

from pricewatch.core.exceptions import FatalInitError, ParseError, RateLimitError, TransientFetchError
from pricewatch.scrapers.utils.browser_manager import BrowserSession
from pricewatch.scrapers.utils.retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)


def _coerce_decimal(value: Any, field_name: str, required: bool = False) -> Optional[Decimal]:
    if value is None:
        if required:
            raise ParseError(f"{field_name} is required")
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ParseError(f"{field_name} is not a number: {value!r}") from e
    if not result.is_finite() or result < 0:
        raise ParseError(f"{field_name} must be a non-negative number")
    return result


@dataclass
class ListingData:
    """Raw listing as extracted from one product card or API record."""

    name: str
    price: Decimal
    product_url: str
    external_id: Optional[str] = None
    currency: Optional[str] = None
    original_price: Optional[Decimal] = None
    is_on_sale: bool = False
    brand: Optional[str] = None
    image_url: Optional[str] = None
    unit: Optional[str] = None
    unit_quantity: Optional[Decimal] = None
    category_hint: Optional[str] = None
    in_stock: bool = True
    scraped_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        """Validate and coerce after initialization."""
        if not isinstance(self.name, str) or not self.name.strip():
            raise ParseError("name is required")
        self.name = " ".join(self.name.split())
        if not self.product_url:
            raise ParseError("product_url is required")
        self.price = _coerce_decimal(self.price, "price", required=True)
        self.original_price = _coerce_decimal(self.original_price, "original_price")
        self.unit_quantity = _coerce_decimal(self.unit_quantity, "unit_quantity")
        if self.external_id is not None:
            self.external_id = str(self.external_id).strip() or None
        if self.original_price is not None and self.original_price > self.price:
            self.is_on_sale = True


@dataclass
class CategoryConfig:
    """One category (listing root) of a source."""

    id: str
    name: str
    url: str

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CategoryConfig":
        return cls(id=str(raw["id"]), name=str(raw.get("name") or raw["id"]), url=str(raw.get("url", "")))


@dataclass
class WaitTimes:
    """Self-imposed pacing, in seconds."""

    between_requests: float = 1.0
    between_categories: float = 2.0
    jitter: float = 0.5


@dataclass
class AdapterConfig:
    """Runtime configuration of one adapter instance.

    Built by the factory from class defaults, the source row's
    scraper_config and global settings.
    """

    adapter_id: str
    source_name: str
    currency: str
    base_url: str
    categories: List[CategoryConfig]
    source_id: Optional[uuid.UUID] = None
    max_pages: int = 100
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    wait_times: WaitTimes = field(default_factory=WaitTimes)
    timeout_seconds: float = 30.0
    headless: bool = True
    proxy_url: Optional[str] = None
    concurrent_pages: int = 1
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def page_timeout_seconds(self) -> float:
        """Guard around a whole page fetch, which may span several network calls."""
        return self.timeout_seconds * 2


@dataclass
class PageInfo:
    category_id: str
    category_name: str
    page_number: int
    total_products_on_page: int


@dataclass
class PageResult:
    """What one fetch_page() call produced.

    has_more alone decides whether pagination continues; a page whose
    records were all rejected can still be followed by valid ones.
    """

    listings: List[ListingData]
    has_more: bool
    total_pages: Optional[int] = None


@dataclass
class ScrapeError:
    message: str
    category_id: Optional[str] = None
    url: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ScrapeStats:
    """Counts accumulated by an adapter during one run."""

    products_scraped: int = 0
    products_failed: int = 0
    pages_scraped: int = 0
    categories_failed: int = 0
    errors: List[ScrapeError] = field(default_factory=list)


PageCallback = Callable[[List[ListingData], PageInfo], Awaitable[int]]


class AdapterState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SCRAPING = "scraping"
    ERRORED = "errored"
    CLEANUP = "cleanup"
    TERMINATED = "terminated"


class BaseAdapter(ABC):
    """Abstract base class for all source adapters.

    Subclasses set adapter_id and default_categories and implement
    fetch_page(); open() and close() acquire and release whatever the
    adapter needs for one run.
    """

    adapter_id: str = ""  # Registry key, e.g. "spar_albania"
    adapter_type: str = ""  # 'api' or 'browser'
    default_base_url: str = ""
    default_currency: str = ""
    default_categories: Sequence[CategoryConfig] = ()
    default_wait_times: Optional[WaitTimes] = None
    default_max_pages: Optional[int] = None
    # Fetch-ahead window inside one category; only API adapters raise it
    supports_parallel_pages: bool = False

    def __init__(self, config: AdapterConfig, log=None):
        """Initialize the adapter.

        Args:
            config: Merged runtime configuration
            log: Bound logger carrying run context (run_id, source_id)
        """
        self.config = config
        self.logger = (log or logger).bind(adapter=self.adapter_id)
        self.state = AdapterState.UNINITIALIZED
        self.stats = ScrapeStats()
        self._page_callback: Optional[PageCallback] = None
        self._requests_made = 0

    @classmethod
    def get_categories(cls) -> List[CategoryConfig]:
        return list(cls.default_categories)

    # ------------------------------------------------------------------
    # Hooks implemented by adapters
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Acquire run-scoped resources. Default: nothing to acquire."""

    @abstractmethod
    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        """Fetch and parse one listing page.

        Args:
            category: Category being scraped
            page_number: 1-based page number

        Returns:
            PageResult with the page's listings and whether more pages follow

        Raises:
            TransientFetchError: On blocks, rate limits or server errors (retried)
        """

    async def close(self) -> None:
        """Release run-scoped resources. Must tolerate open() never having run."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_page_callback(self, callback: Optional[PageCallback]) -> None:
        """Register the coroutine awaited with each page's listings."""
        self._page_callback = callback

    async def initialize(self) -> None:
        """Acquire resources. A second call on an initialized adapter is a no-op."""
        if self.state in (AdapterState.INITIALIZED, AdapterState.SCRAPING):
            return
        if self.state != AdapterState.UNINITIALIZED:
            raise RuntimeError(f"Cannot initialize adapter in state {self.state.value}")

        try:
            await self.open()
        except Exception as e:
            self.state = AdapterState.ERRORED
            self.logger.error("adapter_init_failed", error=str(e), exc_info=True)
            raise FatalInitError(self.adapter_id, str(e)) from e

        self.state = AdapterState.INITIALIZED
        self.logger.info("adapter_initialized", adapter_type=self.adapter_type)

    async def cleanup(self) -> None:
        """Release resources. Safe to call in any state, any number of times."""
        if self.state == AdapterState.TERMINATED:
            return
        self.state = AdapterState.CLEANUP
        try:
            await self.close()
        except Exception as e:
            self.logger.warning("adapter_cleanup_failed", error=str(e))
        finally:
            self.state = AdapterState.TERMINATED
            self.logger.info("adapter_cleaned_up")

    def _require_state(self, *allowed: AdapterState) -> None:
        if self.state not in allowed:
            raise RuntimeError(
                f"Adapter {self.adapter_id} is {self.state.value}; "
                f"expected one of {[s.value for s in allowed]}"
            )

    # ------------------------------------------------------------------
    # Scraping
    # ------------------------------------------------------------------

    def select_categories(self, category_ids: Optional[Sequence[str]] = None) -> List[CategoryConfig]:
        """Return configured categories, restricted to category_ids when given."""
        categories = list(self.config.categories)
        if not category_ids:
            return categories
        wanted = {str(c) for c in category_ids}
        known = {c.id for c in categories}
        unknown = sorted(wanted - known)
        if unknown:
            self.logger.warning("unknown_categories_ignored", category_ids=unknown)
        return [c for c in categories if c.id in wanted]

    async def scrape_product_list(self, category_ids: Optional[Sequence[str]] = None) -> ScrapeStats:
        """Scrape every selected category in order.

        A category that fails after retries is logged, counted as one
        failure and skipped; the remaining categories still run.
        """
        self._require_state(AdapterState.INITIALIZED)
        categories = self.select_categories(category_ids)
        self.logger.info("scrape_started", categories=len(categories))

        try:
            for index, category in enumerate(categories):
                if index > 0:
                    await self._sleep_with_jitter(self.config.wait_times.between_categories)
                try:
                    await self.scrape_category(category)
                except Exception as e:
                    self.stats.products_failed += 1
                    self.stats.categories_failed += 1
                    self.stats.errors.append(
                        ScrapeError(message=f"{type(e).__name__}: {e}", category_id=category.id, url=category.url)
                    )
                    self.logger.error(
                        "category_failed",
                        category_id=category.id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
        except BaseException:
            self.state = AdapterState.ERRORED
            raise

        self.state = AdapterState.INITIALIZED
        self.logger.info(
            "scrape_finished",
            products_scraped=self.stats.products_scraped,
            products_failed=self.stats.products_failed,
            pages=self.stats.pages_scraped,
            categories_failed=self.stats.categories_failed,
        )
        return self.stats

    async def scrape_category(self, category: CategoryConfig) -> int:
        """Paginate one category until it runs out or the page cap is hit.

        Each page is handed to the page callback, and the callback is
        awaited, before the next page is requested.

        Returns:
            Number of listings the callback reported as saved
        """
        self._require_state(AdapterState.INITIALIZED, AdapterState.SCRAPING)
        self.state = AdapterState.SCRAPING
        log = self.logger.bind(category_id=category.id)
        log.info("category_started", category_name=category.name)

        if self.supports_parallel_pages and self.config.concurrent_pages > 1:
            saved = await self._scrape_category_windowed(category, log)
        else:
            saved = await self._scrape_category_sequential(category, log)

        log.info("category_finished", saved=saved)
        return saved

    async def _scrape_category_sequential(self, category: CategoryConfig, log) -> int:
        saved = 0
        page_number = 1
        while page_number <= self.config.max_pages:
            result = await self._fetch_with_retry(category, page_number, log)
            saved += await self._deliver(result, category, page_number, log)
            if not result.has_more:
                break
            page_number += 1
        else:
            log.warning("page_cap_reached", max_pages=self.config.max_pages)
        return saved

    async def _scrape_category_windowed(self, category: CategoryConfig, log) -> int:
        """Fetch up to concurrent_pages pages ahead, delivering strictly in page order."""
        window = self.config.concurrent_pages
        max_pages = self.config.max_pages
        pending: Dict[int, asyncio.Task] = {}
        next_to_fetch = 1
        page_number = 1
        saved = 0

        try:
            while page_number <= max_pages:
                while next_to_fetch <= max_pages and len(pending) < window:
                    pending[next_to_fetch] = asyncio.create_task(
                        self._fetch_with_retry(category, next_to_fetch, log)
                    )
                    next_to_fetch += 1

                result = await pending.pop(page_number)
                saved += await self._deliver(result, category, page_number, log)
                if not result.has_more:
                    break
                page_number += 1
            else:
                log.warning("page_cap_reached", max_pages=max_pages)
        finally:
            for task in pending.values():
                task.cancel()
            if pending:
                await asyncio.gather(*pending.values(), return_exceptions=True)
        return saved

    async def _fetch_with_retry(self, category: CategoryConfig, page_number: int, log) -> PageResult:
        async def attempt() -> PageResult:
            await self._pace_request()
            return await asyncio.wait_for(
                self.fetch_page(category, page_number),
                timeout=self.config.page_timeout_seconds,
            )

        return await with_retry(attempt, self.config.retry_policy, log.bind(page=page_number))

    async def _deliver(self, result: PageResult, category: CategoryConfig, page_number: int, log) -> int:
        listings = result.listings
        self.stats.pages_scraped += 1
        if not listings:
            log.info("page_empty", page=page_number)
            return 0

        info = PageInfo(
            category_id=category.id,
            category_name=category.name,
            page_number=page_number,
            total_products_on_page=len(listings),
        )
        if self._page_callback is None:
            saved = len(listings)
        else:
            saved = await self._page_callback(listings, info)

        self.stats.products_scraped += saved
        log.info("page_scraped", page=page_number, listings=len(listings), saved=saved)
        return saved

    async def _pace_request(self) -> None:
        if self._requests_made > 0:
            await self._sleep_with_jitter(self.config.wait_times.between_requests)
        self._requests_made += 1

    async def _sleep_with_jitter(self, seconds: float) -> None:
        jitter = self.config.wait_times.jitter
        delay = seconds + (random.uniform(0, jitter) if jitter > 0 else 0)
        if delay > 0:
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Helpers for adapters
    # ------------------------------------------------------------------

    def build_listing(self, **fields: Any) -> Optional[ListingData]:
        """Build a ListingData, counting a malformed record as one failure.

        Returns:
            ListingData, or None if the record was skipped
        """
        fields.setdefault("currency", self.config.currency)
        try:
            return ListingData(**fields)
        except (ParseError, TypeError) as e:
            self.stats.products_failed += 1
            self.logger.warning(
                "listing_skipped",
                error=str(e),
                name=str(fields.get("name"))[:60],
            )
            return None

    def absolute_url(self, href: Optional[str]) -> Optional[str]:
        """Resolve a relative link against the source base URL."""
        if not href:
            return None
        if href.startswith("//"):
            return f"https:{href}"
        if href.startswith("http"):
            return href
        return f"{self.config.base_url.rstrip('/')}/{href.lstrip('/')}"


class BaseAPIAdapter(BaseAdapter):
    """Base class for adapters backed by a JSON/REST API.

    One httpx.AsyncClient per run, opened in open() and closed in close().
    """

    adapter_type = "api"
    supports_parallel_pages = True
    default_headers: Dict[str, str] = {}

    def __init__(self, config: AdapterConfig, log=None):
        super().__init__(config, log)
        self.http_client: Optional[httpx.AsyncClient] = None

    def build_headers(self) -> Dict[str, str]:
        return dict(self.default_headers)

    async def open(self) -> None:
        self.http_client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self.build_headers(),
            timeout=self.config.timeout_seconds,
            follow_redirects=True,
            proxy=self.config.proxy_url,
        )

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a JSON document, mapping blocking statuses to retryable errors.

        Raises:
            RateLimitError: On HTTP 429
            TransientFetchError: On 403, 5xx or a non-JSON body
            httpx.HTTPStatusError: On other 4xx (not retried)
        """
        if self.http_client is None:
            raise RuntimeError("HTTP client is not open; call initialize() first")

        response = await self.http_client.get(url, params=params)
        status = response.status_code
        if status == 429:
            raise RateLimitError(self.adapter_id, url=str(response.url))
        if status == 403 or status >= 500:
            raise TransientFetchError(
                f"HTTP {status} from {self.adapter_id}",
                url=str(response.url),
                status_code=status,
            )
        response.raise_for_status()

        try:
            return response.json()
        except ValueError as e:
            raise TransientFetchError(
                f"Non-JSON response from {self.adapter_id}",
                url=str(response.url),
                status_code=status,
            ) from e


class BaseBrowserAdapter(BaseAdapter):
    """Base class for adapters that render pages with Playwright.

    One browser session per adapter instance; pages are loaded one at a
    time, so these adapters never fetch ahead.
    """

    adapter_type = "browser"
    locale: str = "en-US"
    timezone_id: Optional[str] = None
    block_resources: bool = True

    def __init__(self, config: AdapterConfig, log=None):
        super().__init__(config, log)
        self.browser: Optional[BrowserSession] = None

    async def open(self) -> None:
        self.browser = BrowserSession(
            headless=self.config.headless,
            proxy_url=self.config.proxy_url,
            block_resources=self.block_resources,
            locale=self.locale,
            timezone_id=self.timezone_id,
            navigation_timeout_ms=self.config.timeout_seconds * 1000,
            log=self.logger,
        )
        await self.browser.start()
        await self.on_browser_ready()

    async def on_browser_ready(self) -> None:
        """Hook for one-off setup such as dismissing a cookie banner."""

    async def close(self) -> None:
        if self.browser is not None:
            await self.browser.stop()
            self.browser = None

    async def load_html(self, url: str, wait_selector: Optional[str] = None) -> str:
        """Navigate to a URL and return the rendered HTML.

        Raises:
            RateLimitError: On HTTP 429
            TransientFetchError: On 403 or 5xx
        """
        if self.browser is None:
            raise RuntimeError("Browser is not open; call initialize() first")

        page = await self.browser.page()
        self.logger.debug("loading_page", url=url)
        response = await page.goto(url, wait_until="domcontentloaded")
        if response is not None:
            if response.status == 429:
                raise RateLimitError(self.adapter_id, url=url)
            if response.status == 403 or response.status >= 500:
                raise TransientFetchError(
                    f"HTTP {response.status} from {self.adapter_id}",
                    url=url,
                    status_code=response.status,
                )

        if wait_selector:
            await page.wait_for_selector(wait_selector)
        return await page.content()
