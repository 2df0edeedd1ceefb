"""Lotus's Malaysia product API adapter.

The mobile BFF endpoint takes a URL-encoded JSON query with offset/limit
pagination and returns up to 50 products per call. The API refuses
offsets of 2000 and above.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import structlog

from pricewatch.config import settings
from pricewatch.core.exceptions import TransientFetchError
from pricewatch.scrapers.base import BaseAPIAdapter, CategoryConfig, PageResult, WaitTimes
from pricewatch.scrapers.utils.normalizer import extract_quantity

logger = structlog.get_logger(__name__)

PAGE_LIMIT = 50
MAX_OFFSET = 2000
WEBSITE_CODE = "malaysia_hy"
PRODUCT_URL_TEMPLATE = "https://www.lotuss.com.my/en/product/{url_key}"


def build_query(category_url_key: str, offset: int, limit: int = PAGE_LIMIT) -> str:
    """JSON document passed in the `q` query parameter."""
    return json.dumps(
        {
            "offset": offset,
            "limit": limit,
            "filter": {"categoryUrlKey": category_url_key},
            "websiteCode": WEBSITE_CODE,
        },
        separators=(",", ":"),
    )


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def convert_product(product: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Map one API product onto listing fields. Returns None for unpriced items."""
    minimum = _dig(product, "priceRange", "minimumPrice") or {}
    final_price = _dig(minimum, "finalPrice", "value")
    regular_price = _dig(minimum, "regularPrice", "value")
    percent_off = _dig(minimum, "discount", "percentOff") or 0

    if not final_price or final_price <= 0:
        return None

    on_sale = percent_off > 0 or (regular_price is not None and regular_price > final_price)
    original_price = regular_price if on_sale and regular_price and regular_price > final_price else None

    name = product.get("name")
    quantity = extract_quantity(name)
    unit = quantity.unit if quantity else None
    unit_quantity = quantity.value if quantity else None
    if quantity is None:
        unit_of_weight = product.get("unitOfWeight")
        if unit_of_weight and unit_of_weight.lower() != "each":
            unit = unit_of_weight.lower()
        weight = product.get("weightPerPiece")
        if weight and weight > 0:
            unit_quantity = weight

    breadcrumb = product.get("breadcrumb") or []
    category_name = breadcrumb[0].get("name") if breadcrumb and isinstance(breadcrumb[0], dict) else None

    return {
        "name": name,
        "price": str(final_price),
        "original_price": str(original_price) if original_price else None,
        "is_on_sale": on_sale,
        "external_id": product.get("sku"),
        "product_url": PRODUCT_URL_TEMPLATE.format(url_key=product.get("urlKey")) if product.get("urlKey") else None,
        "image_url": _dig(product, "thumbnail", "url") or _dig(product, "image", "url"),
        "brand": _dig(product, "links", "brand", "name"),
        "unit": unit,
        "unit_quantity": unit_quantity,
        "category_hint": category_name,
        "in_stock": product.get("stockStatus") == "IN_STOCK",
    }


def parse_products(payload: Any) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    """Unwrap an API response.

    Returns:
        (raw product dicts, meta.total or None)

    Raises:
        TransientFetchError: If the envelope is missing or reports a non-200 status
    """
    status_code = _dig(payload, "status", "code")
    if status_code != 200:
        message = _dig(payload, "status", "message") or "invalid response structure"
        raise TransientFetchError(f"Lotus's API error {status_code}: {message}")
    products = _dig(payload, "data", "products") or []
    total = _dig(payload, "meta", "total")
    return list(products), total if isinstance(total, int) else None


class LotussApiAdapter(BaseAPIAdapter):
    """Lotus's Malaysia (lotuss.com.my) via its product API."""

    adapter_id = "lotuss_api"
    default_base_url = "https://api-o2o.lotuss.com.my/lotuss-mobile-bff"
    default_currency = "MYR"
    default_max_pages = MAX_OFFSET // PAGE_LIMIT
    default_wait_times = WaitTimes(between_requests=0.5, between_categories=1.0, jitter=0.3)
    default_headers = {
        "accept": "application/json, text/plain, */*",
        "accept-language": "en",
        "channel": "web",
        "version": "2.3.8",
    }
    default_categories = (
        CategoryConfig("3189", "Fresh Produce", "fresh-produce"),
        CategoryConfig("3399", "Meat & Poultry", "meat-poultry"),
        CategoryConfig("23946", "Chilled & Frozen", "chilled-frozen"),
        CategoryConfig("6504", "Bakery", "bakery"),
        CategoryConfig("9405", "Beverages", "beverages"),
        CategoryConfig("2730", "Grocery", "grocery"),
        CategoryConfig("6003", "Baby", "baby"),
        CategoryConfig("3300", "Household", "household"),
        CategoryConfig("5763", "Health & Beauty", "health-beauty"),
        CategoryConfig("6195", "Pets", "pets"),
        CategoryConfig("5820", "Home & Gardening", "home-gardening"),
        CategoryConfig("5922", "Appliances", "appliances"),
        CategoryConfig("5976", "AV & Tech", "av-tech"),
        CategoryConfig("6138", "Sports & Leisure", "sports-leisure"),
        CategoryConfig("6081", "Office, Bags & Stationery", "office-bags-stationery"),
    )

    def build_headers(self) -> Dict[str, str]:
        headers = super().build_headers()
        api_key = self.config.extra.get("api_key") or settings.LOTUSS_API_KEY
        if api_key:
            headers["key"] = api_key
        return headers

    async def fetch_page(self, category: CategoryConfig, page_number: int) -> PageResult:
        offset = (page_number - 1) * PAGE_LIMIT
        if offset >= MAX_OFFSET:
            return PageResult(listings=[], has_more=False)

        payload = await self._get_json(
            "/product/v2/products",
            params={"q": build_query(category.url, offset)},
        )
        products, total = parse_products(payload)

        listings = []
        for product in products:
            fields = convert_product(product)
            if fields is None:
                self.stats.products_failed += 1
                continue
            if not fields.get("category_hint"):
                fields["category_hint"] = category.name
            listing = self.build_listing(**fields)
            if listing:
                listings.append(listing)

        next_offset = offset + PAGE_LIMIT
        if total is not None:
            has_more = next_offset < min(total, MAX_OFFSET)
        else:
            has_more = len(products) >= PAGE_LIMIT and next_offset < MAX_OFFSET

        return PageResult(
            listings=listings,
            has_more=has_more,
            total_pages=-(-min(total, MAX_OFFSET) // PAGE_LIMIT) if total is not None else None,
        )
