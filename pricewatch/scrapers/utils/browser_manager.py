"""Playwright browser session owned by a single adapter run.

One session per adapter instance: pages within it are used one at a
time, and nothing is shared between concurrently running sources.
"""

from typing import Optional

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from pricewatch.scrapers.utils.user_agents import get_random_user_agent

logger = structlog.get_logger(__name__)

BLOCKED_RESOURCE_PATTERN = "**/*.{png,jpg,jpeg,gif,webp,svg,woff,woff2,ttf,eot,mp4}"


class BrowserSession:
    """Chromium browser + context with anti-detection settings.

    Provides:
    - User-agent rotation per session
    - Optional proxy
    - Stealth JS injection to mask automation signals
    - Resource blocking (images/fonts) for faster page loads
    """

    def __init__(
        self,
        headless: bool = True,
        proxy_url: Optional[str] = None,
        block_resources: bool = True,
        locale: str = "en-US",
        timezone_id: Optional[str] = None,
        navigation_timeout_ms: float = 30000,
        log=None,
    ):
        self._headless = headless
        self._proxy_url = proxy_url
        self._block_resources = block_resources
        self._locale = locale
        self._timezone_id = timezone_id
        self._navigation_timeout_ms = navigation_timeout_ms
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self.logger = log or logger

    @property
    def is_started(self) -> bool:
        return self._context is not None

    async def start(self) -> None:
        """Launch the browser and create the context. Safe to call twice."""
        if self._context:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=[
                "--disable-blink-features=AutomationControlled",
                "--disable-dev-shm-usage",
                "--no-sandbox",
            ],
        )

        context_kwargs = dict(
            user_agent=get_random_user_agent(),
            viewport={"width": 1920, "height": 1080},
            locale=self._locale,
            java_script_enabled=True,
            bypass_csp=True,
        )
        if self._timezone_id:
            context_kwargs["timezone_id"] = self._timezone_id
        if self._proxy_url:
            context_kwargs["proxy"] = {"server": self._proxy_url}

        self._context = await self._browser.new_context(**context_kwargs)
        self._context.set_default_navigation_timeout(self._navigation_timeout_ms)
        self._context.set_default_timeout(self._navigation_timeout_ms)
        await self._context.add_init_script(STEALTH_JS)

        if self._block_resources:
            await self._context.route(BLOCKED_RESOURCE_PATTERN, lambda route: route.abort())

        self.logger.info(
            "browser_started",
            headless=self._headless,
            has_proxy=bool(self._proxy_url),
        )

    async def page(self) -> Page:
        """Return the session's page, opening it on first use."""
        if not self._context:
            raise RuntimeError("BrowserSession.start() must be called before page()")
        if self._page is None or self._page.is_closed():
            self._page = await self._context.new_page()
        return self._page

    async def stop(self) -> None:
        """Close page, context, browser and driver. Never raises."""
        for name, closer in (
            ("page", self._page.close if self._page else None),
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                self.logger.warning("browser_close_failed", resource=name, error=str(e))

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None
        self.logger.info("browser_stopped")


# Minimal stealth JS to mask automation signals
STEALTH_JS = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
window.chrome = { runtime: {} };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) =>
  parameters.name === 'notifications'
    ? Promise.resolve({ state: Notification.permission })
    : originalQuery(parameters);
"""
