"""Product model: durable identity of a distinct item."""

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.category import Category
    from pricewatch.models.product_mapping import ProductMapping

PRODUCT_NAME_MAX_LENGTH = 500


class Product(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Canonical product shared by mappings across sources.

    Created on first sighting. Name, image and unit are refreshed on
    rescrape; the id never changes.
    """

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(String(PRODUCT_NAME_MAX_LENGTH), nullable=False)
    normalized_name: Mapped[str] = mapped_column(
        String(PRODUCT_NAME_MAX_LENGTH),
        nullable=False,
        comment="Lower-cased, diacritic-folded name used for fuzzy matching"
    )
    brand: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, comment="g, kg, ml, l, pieces or raw token")
    unit_quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    category: Mapped[Optional["Category"]] = relationship(back_populates="products")
    mappings: Mapped[list["ProductMapping"]] = relationship(back_populates="product")

    __table_args__ = (
        # Enforced by the database so an oversize name fails a batch on every dialect
        CheckConstraint(f"length(name) <= {PRODUCT_NAME_MAX_LENGTH}", name="ck_products_name_length"),
        Index("idx_products_normalized_name_brand", "normalized_name", "brand"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name='{self.name[:30]}')>"
