"""Binding between a Product and one Source's listing."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.price import Price
    from pricewatch.models.product import Product
    from pricewatch.models.source import Source


class ProductMapping(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Where a Product is sold by a Source.

    (source_id, external_id) is unique whenever external_id is set; NULLs
    never collide in a unique constraint. (product_id, source_id) is
    unique overall.
    """

    __tablename__ = "product_mappings"

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    source_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
        comment="Source-native product identifier"
    )
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    product: Mapped["Product"] = relationship(back_populates="mappings")
    source: Mapped["Source"] = relationship(back_populates="mappings")
    prices: Mapped[list["Price"]] = relationship(back_populates="mapping")

    __table_args__ = (
        UniqueConstraint("source_id", "external_id", name="uq_mapping_source_external"),
        UniqueConstraint("product_id", "source_id", name="uq_mapping_product_source"),
    )

    def __repr__(self) -> str:
        return f"<ProductMapping(id={self.id}, source_id={self.source_id}, external_id='{self.external_id}')>"
