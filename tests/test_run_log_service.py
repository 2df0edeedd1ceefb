"""Tests for run history."""

from sqlalchemy import select

from pricewatch.models import RunLog
from pricewatch.services.run_log_service import RunLogService


class TestRunLogService:
    """Tests for RunLogService."""

    async def test_start_then_finish(self, session_factory, sample_source):
        service = RunLogService(session_factory)

        run_log = await service.start(sample_source.id, run_id="run-abc123")
        assert run_log.status == "running"
        assert run_log.completed_at is None
        assert not run_log.is_terminal

        finalized = await service.finish(
            run_log.id, success=True, products_scraped=42, products_failed=3, duration_seconds=12.5
        )
        assert finalized is True

        stored = await service.get(run_log.id)
        assert stored.status == "success"
        assert stored.products_scraped == 42
        assert stored.products_failed == 3
        assert stored.completed_at is not None
        assert float(stored.duration_seconds) == 12.5
        assert stored.run_id == "run-abc123"
        assert stored.is_terminal

    async def test_finish_happens_exactly_once(self, session_factory, sample_source):
        service = RunLogService(session_factory)
        run_log = await service.start(sample_source.id)

        assert await service.finish(run_log.id, success=False, products_scraped=0, products_failed=1,
                                    duration_seconds=1.0, error_message="boom")
        assert not await service.finish(run_log.id, success=True, products_scraped=99, products_failed=0,
                                        duration_seconds=2.0)

        stored = await service.get(run_log.id)
        assert stored.status == "failed"
        assert stored.products_scraped == 0
        assert stored.error_message == "boom"

    async def test_long_error_message_is_truncated(self, session_factory, sample_source):
        service = RunLogService(session_factory)
        run_log = await service.start(sample_source.id)

        await service.finish(run_log.id, success=False, products_scraped=0, products_failed=0,
                             duration_seconds=0.5, error_message="e" * 5000, error_traceback="Traceback ...")

        stored = await service.get(run_log.id)
        assert len(stored.error_message) == 2000
        assert stored.error_traceback == "Traceback ..."

    async def test_history_and_latest_per_source(self, session_factory, sample_source, other_source):
        service = RunLogService(session_factory)
        first = await service.start(sample_source.id)
        second = await service.start(sample_source.id)
        other = await service.start(other_source.id)

        history = await service.get_history(sample_source.id)
        assert [r.id for r in history] == [second.id, first.id]
        assert len(await service.get_history(sample_source.id, limit=1)) == 1

        latest = {r.source_id: r.id for r in await service.get_latest_per_source()}
        assert latest == {sample_source.id: second.id, other_source.id: other.id}

        async with session_factory() as session:
            statuses = (await session.execute(select(RunLog.status))).scalars().all()
        assert set(statuses) == {"running"}
