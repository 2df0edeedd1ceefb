"""Run history: creation, exactly-once finalization and queries."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.models.run_log import RUN_STATUS_FAILED, RUN_STATUS_RUNNING, RUN_STATUS_SUCCESS, RunLog

logger = structlog.get_logger(__name__)


class RunLogService:
    """Writes and reads RunLog rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], log=None):
        self.session_factory = session_factory
        self.logger = (log or logger).bind(service="run_log_service")

    async def start(self, source_id: uuid.UUID, run_id: Optional[str] = None) -> RunLog:
        """Create a 'running' row for a new run."""
        async with self.session_factory() as session:
            run_log = RunLog(
                source_id=source_id,
                run_id=run_id,
                status=RUN_STATUS_RUNNING,
                started_at=datetime.now(timezone.utc),
                products_scraped=0,
                products_failed=0,
            )
            session.add(run_log)
            await session.commit()
            await session.refresh(run_log)
        return run_log

    async def finish(
        self,
        run_log_id: uuid.UUID,
        success: bool,
        products_scraped: int,
        products_failed: int,
        duration_seconds: float,
        error_message: Optional[str] = None,
        error_traceback: Optional[str] = None,
    ) -> bool:
        """Finalize a run to 'success' or 'failed'.

        The update only matches a row that is still 'running', so a run is
        finalized at most once.

        Returns:
            True if this call finalized the row
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(RunLog)
                .where(and_(RunLog.id == run_log_id, RunLog.status == RUN_STATUS_RUNNING))
                .values(
                    status=RUN_STATUS_SUCCESS if success else RUN_STATUS_FAILED,
                    products_scraped=products_scraped,
                    products_failed=products_failed,
                    duration_seconds=Decimal(str(round(duration_seconds, 2))),
                    completed_at=datetime.now(timezone.utc),
                    error_message=error_message[:2000] if error_message else None,
                    error_traceback=error_traceback,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        finalized = result.rowcount == 1
        if not finalized:
            self.logger.warning("run_log_already_finalized", run_log_id=str(run_log_id))
        return finalized

    async def get(self, run_log_id: uuid.UUID) -> Optional[RunLog]:
        async with self.session_factory() as session:
            return await session.get(RunLog, run_log_id)

    async def get_history(self, source_id: uuid.UUID, limit: int = 20) -> List[RunLog]:
        """Most recent runs of a source, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(RunLog)
                .where(RunLog.source_id == source_id)
                .order_by(RunLog.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_latest_per_source(self) -> List[RunLog]:
        """The latest run of every source that has run at least once."""
        async with self.session_factory() as session:
            latest = (
                select(RunLog.source_id, func.max(RunLog.started_at).label("started_at"))
                .group_by(RunLog.source_id)
                .subquery()
            )
            result = await session.execute(
                select(RunLog).join(
                    latest,
                    and_(RunLog.source_id == latest.c.source_id, RunLog.started_at == latest.c.started_at),
                )
            )
            return list(result.scalars().all())
