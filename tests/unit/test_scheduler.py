"""Tests for the moderation background scheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from moddirector.moderation.models import FlushTrigger
from moddirector.moderation.pipeline import PipelineOrchestrator
from moddirector.moderation.raid import RaidDetector
from moddirector.moderation.scheduler import ModerationScheduler, SchedulerStats
from moddirector.moderation.warnings import WarningEscalation


def _pipeline(trigger: FlushTrigger | None = None) -> MagicMock:
    pipeline = MagicMock(spec=PipelineOrchestrator)
    pipeline.should_flush.return_value = trigger
    pipeline.flush = AsyncMock(return_value=[])
    return pipeline


class TestSchedulerStats:
    """Tests for SchedulerStats."""

    def test_to_dict_defaults(self) -> None:
        data = SchedulerStats().to_dict()
        assert data["flushes"] == 0
        assert data["last_flush"] is None


class TestSweeps:
    """Tests for individual sweep ticks."""

    @pytest.mark.asyncio
    async def test_flush_check_idle(self) -> None:
        pipeline = _pipeline(None)
        scheduler = ModerationScheduler(pipeline)
        await scheduler.run_flush_check()
        pipeline.flush.assert_not_awaited()
        assert scheduler.stats.flushes == 0

    @pytest.mark.asyncio
    async def test_flush_check_on_timeout(self) -> None:
        pipeline = _pipeline(FlushTrigger.TIMEOUT)
        scheduler = ModerationScheduler(pipeline)
        await scheduler.run_flush_check()
        pipeline.flush.assert_awaited_once_with(FlushTrigger.TIMEOUT)
        assert scheduler.stats.flushes == 1
        assert scheduler.stats.last_flush is not None

    @pytest.mark.asyncio
    async def test_raid_check_counts_expiries(self) -> None:
        raid = AsyncMock(spec=RaidDetector)
        raid.check_expiry.return_value = [1, 2]
        scheduler = ModerationScheduler(_pipeline(), raid_detector=raid)
        await scheduler.run_raid_check()
        assert scheduler.stats.raid_expiries == 2

    @pytest.mark.asyncio
    async def test_decay_counts(self) -> None:
        warnings = AsyncMock(spec=WarningEscalation)
        warnings.decay_all.return_value = 3
        scheduler = ModerationScheduler(_pipeline(), warnings=warnings)
        await scheduler.run_decay()
        assert scheduler.stats.warnings_decayed == 3

    @pytest.mark.asyncio
    async def test_optional_sweeps_are_noops(self) -> None:
        scheduler = ModerationScheduler(_pipeline())
        await scheduler.run_raid_check()
        await scheduler.run_decay()
        assert scheduler.stats.raid_expiries == 0
        assert scheduler.stats.warnings_decayed == 0


class TestLifecycle:
    """Tests for start/stop and error isolation."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        scheduler = ModerationScheduler(
            _pipeline(),
            raid_detector=AsyncMock(spec=RaidDetector),
            warnings=AsyncMock(spec=WarningEscalation),
        )
        await scheduler.start()
        assert scheduler.is_running
        assert len(scheduler._tasks) == 3

        await scheduler.start()
        assert len(scheduler._tasks) == 3

        await scheduler.stop()
        assert not scheduler.is_running
        assert scheduler._tasks == []

    @pytest.mark.asyncio
    async def test_only_flush_loop_without_extras(self) -> None:
        scheduler = ModerationScheduler(_pipeline())
        await scheduler.start()
        assert len(scheduler._tasks) == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self) -> None:
        """A failing tick is logged and counted; the loop keeps going."""
        pipeline = _pipeline(FlushTrigger.TIMEOUT)
        calls = {"n": 0}

        async def flush(trigger):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return []

        pipeline.flush.side_effect = flush
        scheduler = ModerationScheduler(pipeline, flush_interval=0)

        await scheduler.start()
        for _ in range(50):
            await asyncio.sleep(0)
            if pipeline.flush.await_count >= 2:
                break
        await scheduler.stop()

        assert pipeline.flush.await_count >= 2
        assert scheduler.stats.errors == 1
        assert scheduler.stats.last_error == "boom"
