"""SPAR Albania (shop.spar.al) browser adapter.

WooCommerce storefront rendered with Playwright and parsed with
BeautifulSoup. Prices are in Albanian lek ("269 LEKE"); a sale card shows
the regular price first and the sale price last.
"""

import math
import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from pricewatch.scrapers.base import BaseBrowserAdapter, CategoryConfig, PageResult, WaitTimes
from pricewatch.scrapers.utils.normalizer import extract_quantity, parse_price

logger = structlog.get_logger(__name__)

PRODUCTS_PER_PAGE = 16

_CARD_SELECTOR = "ul.products > li article, .products article"
_WAIT_SELECTOR = "ul.products, .woocommerce-info"
_PRICE_RE = re.compile(r"(\d+(?:[.,]\d+)*)\s*LEKE", re.IGNORECASE)
_RESULT_COUNT_RES = (
    re.compile(r"of\s+([\d.,]+)\s+results", re.IGNORECASE),
    re.compile(r"all\s+([\d.,]+)\s+results", re.IGNORECASE),
)


def parse_result_count(soup: BeautifulSoup) -> Optional[int]:
    """Read the total from "Showing 1-16 of 250 results"."""
    element = soup.select_one(".woocommerce-result-count")
    if not element:
        return None
    text = element.get_text(" ", strip=True)
    for pattern in _RESULT_COUNT_RES:
        match = pattern.search(text)
        if match:
            return int(re.sub(r"[.,]", "", match.group(1)))
    if "single result" in text.lower():
        return 1
    return None


def parse_product_cards(html: str) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    """Parse a category listing page.

    Returns:
        (raw listing dicts, total result count or None). A card whose price
        cannot be read is still returned, with price None, so the caller can
        count it as a failed record.
    """
    soup = BeautifulSoup(html, "html.parser")
    total = parse_result_count(soup)
    records: List[Dict[str, Any]] = []

    for card in soup.select(_CARD_SELECTOR):
        link = card.select_one("h4 a") or card.select_one("a.woocommerce-LoopProduct-link")
        if not link:
            continue
        name = link.get_text(" ", strip=True)
        url = link.get("href")

        price_el = card.select_one(".price")
        prices = _PRICE_RE.findall(price_el.get_text(" ", strip=True)) if price_el else []
        current_price = parse_price(prices[-1]) if prices else None
        original_price = parse_price(prices[0]) if len(prices) > 1 else None

        image_url = None
        img = card.select_one("figure img") or card.select_one("img")
        if img:
            image_url = img.get("data-src") or img.get("src")

        short_desc = card.select_one(".loop-short-desc")
        quantity = extract_quantity(short_desc.get_text(" ", strip=True)) if short_desc else None
        if quantity is None:
            quantity = extract_quantity(name)

        external_id = None
        cart = card.select_one("[data-product_id]")
        if cart:
            external_id = cart.get("data-product_id")

        records.append({
            "name": name,
            "price": current_price,
            "original_price": original_price,
            "product_url": url,
            "external_id": external_id,
            "image_url": image_url,
            "unit": quantity.unit if quantity else None,
            "unit_quantity": quantity.value if quantity else None,
        })

    return records, total


class SparAlbaniaAdapter(BaseBrowserAdapter):
    """SPAR Albania online shop."""

    adapter_id = "spar_albania"
    default_base_url = "https://shop.spar.al"
    default_currency = "ALL"
    locale = "sq-AL"
    timezone_id = "Europe/Tirane"
    default_wait_times = WaitTimes(between_requests=2.0, between_categories=3.0, jitter=0.5)
    default_categories = (
        CategoryConfig("ushqimore", "Ushqimore", "/product-category/ushqimore/"),
        CategoryConfig("pije", "Pije", "/product-category/pije-2/"),
        CategoryConfig("produkte-te-fresketa", "Produkte të freskëta", "/product-category/produkte-te-fresketa-2/"),
        CategoryConfig("detergjent-kozmetike", "Detergjent & Kozmetikë", "/product-category/detergjent-kozmetike/"),
        CategoryConfig("shtepia", "Shtëpia", "/product-category/shtepia/"),
        CategoryConfig("produkte-spar", "Produkte SPAR", "/product-category/produkte-spar/"),
        CategoryConfig("produkte-italiane", "Produkte Italiane", "/product-category/produkte-italiane/"),
    )

    def category_page_url(self, category: CategoryConfig, page_number: int) -> str:
        base = self.absolute_url(category.url)
        if not base.endswith("/"):
            base += "/"
        if page_number <= 1:
            return base
        return f"{base}page/{page_number}/"

    async def on_browser_ready(self) -> None:
        """Accept the cookie banner once so it does not cover product cards."""
        page = await self.browser.page()
        try:
            await page.goto(self.config.base_url, wait_until="domcontentloaded")
            button = page.get_by_role("button", name="PRANO")
            if await button.count() > 0:
                await button.first.click(timeout=3000)
                self.logger.debug("cookie_banner_accepted")
        except PlaywrightError as e:
            self.logger.debug("cookie_banner_not_handled", error=str(e))

    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        url = self.category_page_url(category, page_number)
        html = await self.load_html(url, wait_selector=_WAIT_SELECTOR)
        records, total = parse_product_cards(html)

        listings = []
        for record in records:
            listing = self.build_listing(category_hint=category.name, **record)
            if listing:
                listings.append(listing)

        total_pages = math.ceil(total / PRODUCTS_PER_PAGE) if total else None
        if total_pages is not None:
            has_more = page_number < total_pages
        else:
            has_more = len(records) >= PRODUCTS_PER_PAGE

        self.logger.debug(
            "spar_page_parsed",
            url=url,
            cards=len(records),
            listings=len(listings),
            total_results=total,
        )
        return PageResult(listings=listings, has_more=has_more, total_pages=total_pages)
