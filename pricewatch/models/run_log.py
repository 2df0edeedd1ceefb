"""Run history: one row per orchestrated scrape of a source."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.source import Source

RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCESS = "success"
RUN_STATUS_FAILED = "failed"


class RunLog(UUIDPrimaryKeyMixin, Base):
    """Tracks execution of one scrape run.

    Created as 'running' when the run starts and finalized exactly once
    to 'success' or 'failed'.
    """

    __tablename__ = "run_logs"

    source_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    run_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, comment="Correlation id bound into logs")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RUN_STATUS_RUNNING,
        index=True,
        comment="Status: 'running', 'success', 'failed'"
    )

    products_scraped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    products_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_traceback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    source: Mapped["Source"] = relationship(back_populates="run_logs")

    __table_args__ = (
        Index("idx_run_logs_source_started", "source_id", "started_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (RUN_STATUS_SUCCESS, RUN_STATUS_FAILED)

    def __repr__(self) -> str:
        return f"<RunLog(id={self.id}, source_id={self.source_id}, status='{self.status}')>"
