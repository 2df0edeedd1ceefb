"""Append-only price observations."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.product_mapping import ProductMapping


class Price(UUIDPrimaryKeyMixin, Base):
    """One observed price for a mapping. Rows are never updated or deleted."""

    __tablename__ = "prices"

    mapping_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("product_mappings.id", ondelete="CASCADE"),
        nullable=False,
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    is_on_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price_per_unit: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(14, 4),
        nullable=True,
        comment="Price per kg, l or piece; NULL when quantity is unknown"
    )
    scraped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    mapping: Mapped["ProductMapping"] = relationship(back_populates="prices")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_prices_price_non_negative"),
        Index("idx_prices_mapping_scraped", "mapping_id", "scraped_at"),
    )

    def __repr__(self) -> str:
        return f"<Price(mapping_id={self.mapping_id}, price={self.price} {self.currency}, scraped_at={self.scraped_at})>"
