"""Source model: an external retailer scraped by one adapter."""

from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.product_mapping import ProductMapping
    from pricewatch.models.run_log import RunLog


class Source(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Retailer website or API with its own adapter and currency.

    Rows are owned by the catalog side of the system; the ingestion
    pipeline only reads them.
    """

    __tablename__ = "sources"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    adapter_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="Registry key of the adapter, e.g. 'spar_albania'"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    base_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Per-source overrides merged over adapter defaults
    scraper_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    mappings: Mapped[list["ProductMapping"]] = relationship(back_populates="source")
    run_logs: Mapped[list["RunLog"]] = relationship(back_populates="source")

    def __repr__(self) -> str:
        return f"<Source(id={self.id}, name='{self.name}', adapter_id='{self.adapter_id}')>"
