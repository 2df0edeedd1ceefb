"""Product reconciliation and price persistence.

Resolves raw listings to a durable Product + ProductMapping identity and
appends Price rows. Whole pages go through a set-based bulk path; if any
statement in it fails, the page is replayed record by record so one bad
row cannot sink the rest.

Identity resolution per listing:
1. external_id -> existing mapping in the same source
2. normalized URL -> mapping in the same source that has no external_id
3. (normalized_name, brand) -> existing product, only without an external_id
4. otherwise a new product
The mapping for (product, source) is then created or refreshed, and a
price row is inserted referencing it.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import and_, delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.core.exceptions import PersistenceError
from pricewatch.models.price import Price
from pricewatch.models.product import Product
from pricewatch.models.product_mapping import ProductMapping
from pricewatch.scrapers.base import ListingData
from pricewatch.scrapers.utils.normalizer import (
    calculate_price_per_unit,
    extract_external_id,
    extract_quantity,
    normalize_external_id,
    normalize_product_name,
    normalize_product_url,
    normalize_unit,
)

logger = structlog.get_logger(__name__)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class PreparedListing:
    """A listing with every derived field computed once."""

    name: str
    normalized_name: str
    brand: Optional[str]
    external_id: Optional[str]
    url: str
    image_url: Optional[str]
    unit: Optional[str]
    unit_quantity: Optional[Decimal]
    price: Decimal
    currency: str
    original_price: Optional[Decimal]
    is_on_sale: bool
    price_per_unit: Optional[Decimal]
    scraped_at: datetime

    @property
    def key(self) -> str:
        """Identity of the listing within one batch."""
        if self.external_id:
            return f"ext:{self.external_id}"
        return f"nb:{self.normalized_name}|{(self.brand or '').lower()}"


@dataclass
class BatchResult:
    saved: int = 0
    failed: int = 0
    duplicates: int = 0
    used_fallback: bool = False


@dataclass(eq=False)
class _Resolution:
    prepared: PreparedListing
    product: Optional[Product] = None
    mapping: Optional[ProductMapping] = None
    new_product_id: Optional[uuid.UUID] = None

    @property
    def product_id(self) -> Optional[uuid.UUID]:
        return self.product.id if self.product is not None else self.new_product_id


def prepare_listing(listing: ListingData, default_currency: str) -> PreparedListing:
    """Normalize identifiers, quantity and unit, and compute price per unit."""
    external_id = normalize_external_id(listing.external_id) or extract_external_id(listing.product_url)

    unit = listing.unit
    unit_quantity = listing.unit_quantity
    if unit_quantity is None:
        found = extract_quantity(listing.name)
        if found is not None:
            unit, unit_quantity = found.unit, found.value
    if unit and unit_quantity is not None:
        normalized = normalize_unit(unit, unit_quantity)
        unit, unit_quantity = normalized.unit, normalized.value

    brand = listing.brand.strip() if listing.brand else None

    return PreparedListing(
        name=listing.name,
        normalized_name=normalize_product_name(listing.name),
        brand=brand or None,
        external_id=external_id,
        url=normalize_product_url(listing.product_url),
        image_url=listing.image_url or None,
        unit=unit,
        unit_quantity=unit_quantity,
        price=listing.price,
        currency=(listing.currency or default_currency),
        original_price=listing.original_price,
        is_on_sale=listing.is_on_sale,
        price_per_unit=calculate_price_per_unit(listing.price, unit_quantity, unit),
        scraped_at=_as_aware(listing.scraped_at),
    )


class ProductService:
    """Reconciles scraped listings into products, mappings and prices.

    Each save opens its own session from the factory, so the service is
    safe to share between concurrently running sources.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], log=None):
        """Initialize product service.

        Args:
            session_factory: Async session factory for database access
            log: Optional bound logger carrying run context
        """
        self.session_factory = session_factory
        self.logger = (log or logger).bind(service="product_service")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save_listings(
        self,
        listings: Sequence[ListingData],
        source_id: uuid.UUID,
        currency: str,
    ) -> BatchResult:
        """Persist one page of listings.

        Args:
            listings: Raw listings from the adapter
            source_id: Source the listings came from
            currency: Default currency for listings that carry none

        Returns:
            BatchResult with saved / failed / duplicate counts
        """
        result = BatchResult()
        prepared: List[PreparedListing] = []
        for listing in listings:
            try:
                prepared.append(prepare_listing(listing, currency))
            except Exception as e:
                result.failed += 1
                self.logger.warning("listing_prepare_failed", name=listing.name[:60], error=str(e))

        unique, result.duplicates = self._dedupe(prepared)
        if not unique:
            return result

        try:
            await self._save_bulk_transaction(unique, source_id)
            result.saved = len(unique)
        except PersistenceError as e:
            self.logger.warning(
                "bulk_save_failed",
                source_id=str(source_id),
                batch_size=len(unique),
                error=e.message,
            )
            result.used_fallback = True
            saved, failed = await self._save_per_record(unique, source_id)
            result.saved = saved
            result.failed += failed

        self.logger.debug(
            "listings_saved",
            source_id=str(source_id),
            saved=result.saved,
            failed=result.failed,
            duplicates=result.duplicates,
            fallback=result.used_fallback,
        )
        return result

    async def find_or_create_product(
        self,
        listing: ListingData,
        source_id: uuid.UUID,
        currency: str = "",
    ) -> uuid.UUID:
        """Resolve one listing to a mapping, creating product/mapping as needed.

        Returns:
            The mapping id
        """
        prepared = prepare_listing(listing, currency)
        async with self.session_factory() as session:
            mapping_id = await self._resolve_one(session, prepared, source_id)
            await session.commit()
        return mapping_id

    async def record_price(self, mapping_id: uuid.UUID, listing: ListingData, currency: str = "") -> None:
        """Append one price observation for a mapping."""
        prepared = prepare_listing(listing, currency)
        async with self.session_factory() as session:
            await self._insert_prices(session, [(mapping_id, prepared)])
            await session.commit()

    # ------------------------------------------------------------------
    # Bulk path
    # ------------------------------------------------------------------

    def _dedupe(self, prepared: Iterable[PreparedListing]) -> Tuple[List[PreparedListing], int]:
        seen: Dict[str, PreparedListing] = {}
        duplicates = 0
        for item in prepared:
            if item.key in seen:
                duplicates += 1
            # later sighting on the same page wins
            seen[item.key] = item
        return list(seen.values()), duplicates

    async def _save_bulk_transaction(self, batch: List[PreparedListing], source_id: uuid.UUID) -> None:
        """Run the bulk path in one transaction; any failure rolls it back entirely.

        Raises:
            PersistenceError: Wrapping whatever statement failed
        """
        try:
            async with self.session_factory() as session:
                await self._save_bulk(session, batch, source_id)
                await session.commit()
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e

    async def _save_bulk(self, session: AsyncSession, batch: List[PreparedListing], source_id: uuid.UUID) -> None:
        resolutions = [_Resolution(prepared=p) for p in batch]

        # (a) existing mappings by external_id, one query for the batch
        ext_ids = [r.prepared.external_id for r in resolutions if r.prepared.external_id]
        by_ext: Dict[str, Tuple[ProductMapping, Product]] = {}
        if ext_ids:
            rows = await session.execute(
                select(ProductMapping, Product)
                .join(Product, ProductMapping.product_id == Product.id)
                .where(and_(ProductMapping.source_id == source_id, ProductMapping.external_id.in_(ext_ids)))
            )
            by_ext = {mapping.external_id: (mapping, product) for mapping, product in rows.all()}
        for r in resolutions:
            if r.prepared.external_id in by_ext:
                r.mapping, r.product = by_ext[r.prepared.external_id]

        # Secondary signal: same URL on a mapping that carries no conflicting external_id
        unresolved = [r for r in resolutions if r.mapping is None and r.prepared.url]
        if unresolved:
            rows = await session.execute(
                select(ProductMapping, Product)
                .join(Product, ProductMapping.product_id == Product.id)
                .where(and_(
                    ProductMapping.source_id == source_id,
                    ProductMapping.url.in_({r.prepared.url for r in unresolved}),
                ))
            )
            by_url: Dict[str, Tuple[ProductMapping, Product]] = {}
            for mapping, product in rows.all():
                by_url.setdefault(mapping.url, (mapping, product))
            claimed = {r.mapping.id for r in resolutions if r.mapping is not None}
            for r in unresolved:
                match = by_url.get(r.prepared.url)
                if match is None or match[0].id in claimed:
                    continue
                mapping, product = match
                if r.prepared.external_id and mapping.external_id:
                    continue
                r.mapping, r.product = mapping, product
                claimed.add(mapping.id)

        # Fuzzy (normalized_name, brand) match, only for listings without external_id
        fuzzy = [r for r in resolutions if r.product is None and not r.prepared.external_id]
        if fuzzy:
            rows = await session.execute(
                select(Product)
                .where(Product.normalized_name.in_({r.prepared.normalized_name for r in fuzzy}))
                .order_by(Product.created_at)
            )
            by_name_brand: Dict[Tuple[str, str], Product] = {}
            for product in rows.scalars().all():
                by_name_brand.setdefault((product.normalized_name, (product.brand or "").lower()), product)
            for r in fuzzy:
                r.product = by_name_brand.get((r.prepared.normalized_name, (r.prepared.brand or "").lower()))

            matched_ids = {r.product.id for r in fuzzy if r.product is not None}
            if matched_ids:
                rows = await session.execute(
                    select(ProductMapping).where(and_(
                        ProductMapping.source_id == source_id,
                        ProductMapping.product_id.in_(matched_ids),
                    ))
                )
                by_product = {m.product_id: m for m in rows.scalars().all()}
                for r in fuzzy:
                    if r.product is not None:
                        r.mapping = by_product.get(r.product.id)

        # (b)+(c) refresh existing rows; the unit of work batches the UPDATEs
        for r in resolutions:
            if r.product is not None:
                self._refresh_product(r.product, r.prepared, r.mapping)
            if r.mapping is not None:
                self._refresh_mapping(r.mapping, r.prepared)
        await session.flush()

        # (c) new products in one statement
        new_products = []
        for r in resolutions:
            if r.product is None:
                r.new_product_id = uuid.uuid4()
                new_products.append(self._product_row(r.new_product_id, r.prepared))
        if new_products:
            await session.execute(insert(Product), new_products)

        # (c) new mappings as one upsert on (source_id, external_id)
        mapping_ids: Dict[int, uuid.UUID] = {
            i: r.mapping.id for i, r in enumerate(resolutions) if r.mapping is not None
        }
        pending = [(i, r) for i, r in enumerate(resolutions) if r.mapping is None]
        if pending:
            returned = await self._upsert_mappings(
                session,
                [self._mapping_row(r.product_id, r.prepared, source_id) for _, r in pending],
            )
            by_ext_returned = {ext: (mid, pid) for mid, pid, ext in returned if ext is not None}
            by_product_returned = {pid: mid for mid, pid, ext in returned if ext is None}

            orphans = []
            for index, r in pending:
                if r.prepared.external_id:
                    mapping_id, winner_product_id = by_ext_returned[r.prepared.external_id]
                    if r.new_product_id is not None and winner_product_id != r.new_product_id:
                        # A concurrent run created this mapping first; drop our product
                        orphans.append(r.new_product_id)
                else:
                    mapping_id = by_product_returned[r.product_id]
                mapping_ids[index] = mapping_id
            if orphans:
                await session.execute(delete(Product).where(Product.id.in_(orphans)))

        # (d) prices last, once every mapping id is known
        await self._insert_prices(
            session,
            [(mapping_ids[i], r.prepared) for i, r in enumerate(resolutions)],
        )

    # ------------------------------------------------------------------
    # Per-record fallback
    # ------------------------------------------------------------------

    async def _save_per_record(self, batch: List[PreparedListing], source_id: uuid.UUID) -> Tuple[int, int]:
        saved = failed = 0
        for prepared in batch:
            try:
                async with self.session_factory() as session:
                    mapping_id = await self._resolve_one(session, prepared, source_id)
                    await self._insert_prices(session, [(mapping_id, prepared)])
                    await session.commit()
                saved += 1
            except Exception as e:
                failed += 1
                self.logger.error(
                    "listing_save_failed",
                    source_id=str(source_id),
                    external_id=prepared.external_id,
                    name=prepared.name[:60],
                    error=str(e),
                    error_type=type(e).__name__,
                )
        self.logger.info("per_record_fallback_done", saved=saved, failed=failed)
        return saved, failed

    async def _resolve_one(self, session: AsyncSession, prepared: PreparedListing, source_id: uuid.UUID) -> uuid.UUID:
        mapping: Optional[ProductMapping] = None
        product: Optional[Product] = None

        if prepared.external_id:
            mapping = (await session.execute(
                select(ProductMapping).where(and_(
                    ProductMapping.source_id == source_id,
                    ProductMapping.external_id == prepared.external_id,
                ))
            )).scalar_one_or_none()

        if mapping is None and prepared.url:
            url_filter = [ProductMapping.source_id == source_id, ProductMapping.url == prepared.url]
            if prepared.external_id:
                url_filter.append(ProductMapping.external_id.is_(None))
            mapping = (await session.execute(
                select(ProductMapping).where(and_(*url_filter)).limit(1)
            )).scalar_one_or_none()

        if mapping is not None:
            product = await session.get(Product, mapping.product_id)
        elif not prepared.external_id:
            # brand compared in Python: SQLite's lower() only folds ASCII
            brand = (prepared.brand or "").lower()
            candidates = (await session.execute(
                select(Product)
                .where(Product.normalized_name == prepared.normalized_name)
                .order_by(Product.created_at)
            )).scalars().all()
            product = next((p for p in candidates if (p.brand or "").lower() == brand), None)
            if product is not None:
                mapping = (await session.execute(
                    select(ProductMapping).where(and_(
                        ProductMapping.source_id == source_id,
                        ProductMapping.product_id == product.id,
                    ))
                )).scalar_one_or_none()

        if product is None:
            product_id = uuid.uuid4()
            await session.execute(insert(Product), [self._product_row(product_id, prepared)])
        else:
            product_id = product.id
            self._refresh_product(product, prepared, mapping)

        if mapping is not None:
            self._refresh_mapping(mapping, prepared)
            await session.flush()
            return mapping.id

        await session.flush()
        returned = await self._upsert_mappings(session, [self._mapping_row(product_id, prepared, source_id)])
        mapping_id, winner_product_id, _ = returned[0]
        if product is None and winner_product_id != product_id:
            await session.execute(delete(Product).where(Product.id == product_id))
        return mapping_id

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _is_stale(self, mapping: Optional[ProductMapping], prepared: PreparedListing) -> bool:
        """Last write wins: an observation older than the mapping's last sighting."""
        if mapping is None or mapping.last_scraped_at is None:
            return False
        return prepared.scraped_at < _as_aware(mapping.last_scraped_at)

    def _refresh_product(self, product: Product, prepared: PreparedListing, mapping: Optional[ProductMapping]) -> None:
        if self._is_stale(mapping, prepared):
            return
        if prepared.name and prepared.name != product.name:
            product.name = prepared.name
            product.normalized_name = prepared.normalized_name
        if prepared.image_url and prepared.image_url != product.image_url:
            product.image_url = prepared.image_url
        if prepared.unit and prepared.unit != product.unit:
            product.unit = prepared.unit
        if prepared.unit_quantity is not None and prepared.unit_quantity != product.unit_quantity:
            product.unit_quantity = prepared.unit_quantity
        if prepared.brand and not product.brand:
            product.brand = prepared.brand

    def _refresh_mapping(self, mapping: ProductMapping, prepared: PreparedListing) -> None:
        if mapping.external_id is None and prepared.external_id:
            mapping.external_id = prepared.external_id
        if self._is_stale(mapping, prepared):
            return
        if prepared.url and prepared.url != mapping.url:
            mapping.url = prepared.url
        mapping.last_scraped_at = prepared.scraped_at

    def _product_row(self, product_id: uuid.UUID, prepared: PreparedListing) -> dict:
        return {
            "id": product_id,
            "name": prepared.name,
            "normalized_name": prepared.normalized_name,
            "brand": prepared.brand,
            "unit": prepared.unit,
            "unit_quantity": prepared.unit_quantity,
            "image_url": prepared.image_url,
        }

    def _mapping_row(self, product_id: uuid.UUID, prepared: PreparedListing, source_id: uuid.UUID) -> dict:
        return {
            "id": uuid.uuid4(),
            "product_id": product_id,
            "source_id": source_id,
            "external_id": prepared.external_id,
            "url": prepared.url,
            "last_scraped_at": prepared.scraped_at,
        }

    async def _upsert_mappings(self, session: AsyncSession, rows: List[dict]) -> List[Tuple[uuid.UUID, uuid.UUID, Optional[str]]]:
        """Insert mappings, refreshing url/last_scraped_at on a (source_id, external_id) conflict.

        Returns:
            (mapping_id, product_id, external_id) for every row
        """
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            raise PersistenceError(f"Mapping upsert is not supported on {dialect}")

        stmt = dialect_insert(ProductMapping).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProductMapping.source_id, ProductMapping.external_id],
            set_={
                "url": stmt.excluded.url,
                "last_scraped_at": stmt.excluded.last_scraped_at,
                "updated_at": func.now(),
            },
        ).returning(ProductMapping.id, ProductMapping.product_id, ProductMapping.external_id)

        result = await session.execute(stmt)
        return [(row[0], row[1], row[2]) for row in result.all()]

    async def _insert_prices(self, session: AsyncSession, items: List[Tuple[uuid.UUID, PreparedListing]]) -> None:
        if not items:
            return
        await session.execute(
            insert(Price),
            [
                {
                    "id": uuid.uuid4(),
                    "mapping_id": mapping_id,
                    "price": prepared.price,
                    "currency": prepared.currency,
                    "original_price": prepared.original_price,
                    "is_on_sale": prepared.is_on_sale,
                    "price_per_unit": prepared.price_per_unit,
                    "scraped_at": prepared.scraped_at,
                }
                for mapping_id, prepared in items
            ],
        )
