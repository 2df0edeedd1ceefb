"""Tests for the SPAR Albania and Lotus's adapters, without network access."""

import json
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

from pricewatch.core.exceptions import RateLimitError, TransientFetchError
from pricewatch.scrapers.adapters.lotuss import LotussApiAdapter, build_query, convert_product, parse_products
from pricewatch.scrapers.adapters.spar_albania import SparAlbaniaAdapter, parse_product_cards

from fake_adapters import make_config

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def spar_html() -> str:
    return (FIXTURES / "spar_category_page.html").read_text(encoding="utf-8")


def lotuss_product(**overrides) -> dict:
    product = {
        "sku": "74823",
        "name": "Dutch Lady Fresh Milk 1L",
        "urlKey": "dutch-lady-fresh-milk-1l-74823",
        "priceRange": {
            "minimumPrice": {
                "finalPrice": {"value": 7.49},
                "regularPrice": {"value": 8.99},
                "discount": {"percentOff": 16.7},
            }
        },
        "thumbnail": {"url": "https://cdn.lotuss.example/74823.jpg"},
        "links": {"brand": {"name": "Dutch Lady"}},
        "breadcrumb": [{"name": "Chilled & Frozen"}],
        "stockStatus": "IN_STOCK",
    }
    product.update(overrides)
    return product


class TestSparAlbaniaParsing:
    """Tests for SPAR Albania page parsing."""

    def test_parse_product_cards(self, spar_html):
        records, total = parse_product_cards(spar_html)

        assert total == 40
        assert len(records) == 3

        cola = records[0]
        assert cola["name"] == "Coca-Cola 1.5L"
        assert cola["price"] == Decimal("189")
        assert cola["original_price"] is None
        assert cola["external_id"] == "4411"
        assert cola["image_url"] == "https://shop.spar.al/wp-content/uploads/coca-cola.jpg"
        assert (cola["unit"], cola["unit_quantity"]) == ("l", Decimal("1.5"))

        water = records[1]
        assert water["price"] == Decimal("269")
        assert water["original_price"] == Decimal("299")
        assert (water["unit"], water["unit_quantity"]) == ("ml", Decimal("3000"))

        assert records[2]["price"] is None

    async def test_fetch_page_builds_listings(self, spar_html, monkeypatch):
        adapter = SparAlbaniaAdapter(make_config(SparAlbaniaAdapter, base_url="https://shop.spar.al", currency="ALL"))
        requested = []

        async def fake_load_html(url, wait_selector=None):
            requested.append(url)
            return spar_html

        monkeypatch.setattr(adapter, "load_html", fake_load_html)
        category = adapter.config.categories[1]

        first = await adapter.fetch_page(category, 1)
        last = await adapter.fetch_page(category, 3)

        assert requested == [
            "https://shop.spar.al/product-category/pije-2/",
            "https://shop.spar.al/product-category/pije-2/page/3/",
        ]
        assert len(first.listings) == 2
        assert first.total_pages == 3
        assert first.has_more is True
        assert last.has_more is False
        assert first.listings[1].is_on_sale is True
        assert first.listings[0].currency == "ALL"
        assert first.listings[0].category_hint == "Pije"
        # the unpriced card, once per fetched page
        assert adapter.stats.products_failed == 2


class TestLotussParsing:
    """Tests for Lotus's API payload handling."""

    def test_build_query(self):
        query = json.loads(build_query("beverages", 100))
        assert query == {
            "offset": 100,
            "limit": 50,
            "filter": {"categoryUrlKey": "beverages"},
            "websiteCode": "malaysia_hy",
        }

    def test_convert_product_on_sale(self):
        fields = convert_product(lotuss_product())

        assert fields["price"] == "7.49"
        assert fields["original_price"] == "8.99"
        assert fields["is_on_sale"] is True
        assert fields["external_id"] == "74823"
        assert fields["product_url"].endswith("/product/dutch-lady-fresh-milk-1l-74823")
        assert fields["brand"] == "Dutch Lady"
        assert (fields["unit"], fields["unit_quantity"]) == ("l", Decimal("1"))
        assert fields["category_hint"] == "Chilled & Frozen"
        assert fields["in_stock"] is True

    def test_convert_product_weight_fallback(self):
        fields = convert_product(
            lotuss_product(name="Banana Berangan", unitOfWeight="KG", weightPerPiece=1.2, breadcrumb=[])
        )
        assert fields["unit"] == "kg"
        assert fields["unit_quantity"] == 1.2
        assert fields["category_hint"] is None

    def test_unpriced_product_is_skipped(self):
        product = lotuss_product(priceRange={"minimumPrice": {"finalPrice": {"value": 0}}})
        assert convert_product(product) is None

    def test_parse_products_rejects_error_envelopes(self):
        with pytest.raises(TransientFetchError):
            parse_products({"status": {"code": 500, "message": "upstream timeout"}})

    def test_parse_products(self):
        products, total = parse_products(
            {"status": {"code": 200}, "data": {"products": [lotuss_product()]}, "meta": {"total": 1}}
        )
        assert len(products) == 1
        assert total == 1


class TestLotussFetchPage:
    """Tests for LotussApiAdapter.fetch_page over a mocked transport."""

    def _adapter(self, handler) -> LotussApiAdapter:
        adapter = LotussApiAdapter(
            make_config(LotussApiAdapter, base_url="https://api.lotuss.example/bff", currency="MYR")
        )
        adapter.http_client = httpx.AsyncClient(
            base_url=adapter.config.base_url,
            transport=httpx.MockTransport(handler),
        )
        return adapter

    async def test_fetch_page(self):
        seen_queries = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/bff/product/v2/products"
            seen_queries.append(json.loads(request.url.params["q"]))
            return httpx.Response(
                200,
                json={
                    "status": {"code": 200},
                    "data": {
                        "products": [
                            lotuss_product(),
                            lotuss_product(sku="11", name="Roti Gardenia 400g", breadcrumb=[]),
                            lotuss_product(sku="12", priceRange={}),
                        ]
                    },
                    "meta": {"total": 3},
                },
            )

        adapter = self._adapter(handler)
        category = adapter.config.categories[4]
        try:
            result = await adapter.fetch_page(category, 1)
        finally:
            await adapter.close()

        assert seen_queries[0]["offset"] == 0
        assert seen_queries[0]["filter"] == {"categoryUrlKey": "beverages"}
        assert [listing.external_id for listing in result.listings] == ["74823", "11"]
        assert result.listings[1].category_hint == "Beverages"
        assert result.listings[0].currency == "MYR"
        assert result.has_more is False
        assert adapter.stats.products_failed == 1

    async def test_offset_cap_returns_empty_page(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected past the offset cap")

        adapter = self._adapter(handler)
        try:
            result = await adapter.fetch_page(adapter.config.categories[0], 41)
        finally:
            await adapter.close()
        assert result.listings == []
        assert result.has_more is False

    async def test_unpriced_page_is_followed_by_the_next_one(self):
        offsets = []

        def handler(request: httpx.Request) -> httpx.Response:
            offset = json.loads(request.url.params["q"])["offset"]
            offsets.append(offset)
            if offset == 0:
                products = [
                    lotuss_product(sku=f"free-{i}", priceRange={"minimumPrice": {"finalPrice": {"value": 0}}})
                    for i in range(50)
                ]
            else:
                products = [lotuss_product(sku=f"sku-{i}", urlKey=f"item-{i}") for i in range(50)]
            return httpx.Response(
                200,
                json={"status": {"code": 200}, "data": {"products": products}, "meta": {"total": 100}},
            )

        adapter = LotussApiAdapter(
            make_config(LotussApiAdapter, base_url="https://api.lotuss.example/bff", currency="MYR")
        )
        await adapter.initialize()
        await adapter.http_client.aclose()
        adapter.http_client = httpx.AsyncClient(
            base_url=adapter.config.base_url,
            transport=httpx.MockTransport(handler),
        )
        try:
            stats = await adapter.scrape_product_list(["9405"])
        finally:
            await adapter.cleanup()

        assert offsets == [0, 50]
        assert stats.products_scraped == 50
        assert stats.products_failed == 50

    @pytest.mark.parametrize("status,error", [(429, RateLimitError), (503, TransientFetchError), (403, TransientFetchError)])
    async def test_blocking_statuses_are_retryable_errors(self, status, error):
        adapter = self._adapter(lambda request: httpx.Response(status, text="blocked"))
        try:
            with pytest.raises(error):
                await adapter.fetch_page(adapter.config.categories[0], 1)
        finally:
            await adapter.close()

    def test_api_key_header(self):
        adapter = LotussApiAdapter(make_config(LotussApiAdapter, extra={"api_key": "k-123"}))
        assert adapter.build_headers()["key"] == "k-123"
        assert adapter.build_headers()["channel"] == "web"
