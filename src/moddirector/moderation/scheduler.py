"""Background sweeps for the moderation pipeline.

Three independent loops share the event loop with message handling:
1. Flush poll: dispatch the buffer once its timeout trigger fires
2. Raid sweep: expire raid mode that has outlived its window
3. Decay sweep: drop stale warning levels by one step
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from moddirector.logging import get_logger

if TYPE_CHECKING:
    from moddirector.moderation.pipeline import PipelineOrchestrator
    from moddirector.moderation.raid import RaidDetector
    from moddirector.moderation.warnings import WarningEscalation

log = get_logger("moddirector.moderation.scheduler")


@dataclass
class SchedulerStats:
    """Counters for the background sweeps."""

    flushes: int = 0
    raid_expiries: int = 0
    warnings_decayed: int = 0
    errors: int = 0
    last_error: str | None = None
    last_flush: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "flushes": self.flushes,
            "raid_expiries": self.raid_expiries,
            "warnings_decayed": self.warnings_decayed,
            "errors": self.errors,
            "last_error": self.last_error,
            "last_flush": self.last_flush.isoformat() if self.last_flush else None,
        }


class ModerationScheduler:
    """Run the periodic flush, raid expiry and decay sweeps."""

    def __init__(
        self,
        pipeline: PipelineOrchestrator,
        *,
        raid_detector: RaidDetector | None = None,
        warnings: WarningEscalation | None = None,
        flush_interval: float = 5.0,
        raid_check_interval: float = 60.0,
        decay_interval: float = 3600.0,
    ) -> None:
        self._pipeline = pipeline
        self._raid = raid_detector
        self._warnings = warnings
        self._flush_interval = flush_interval
        self._raid_check_interval = raid_check_interval
        self._decay_interval = decay_interval
        self._running = False
        self._tasks: list[asyncio.Task[None]] = []
        self._stats = SchedulerStats()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    async def start(self) -> None:
        """Start every applicable sweep."""
        if self._running:
            log.warning("scheduler_already_running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop("flush", self._flush_interval, self.run_flush_check))
        ]
        if self._raid is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._run_loop("raid_expiry", self._raid_check_interval, self.run_raid_check)
                )
            )
        if self._warnings is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._run_loop("decay", self._decay_interval, self.run_decay)
                )
            )
        log.info("moderation_scheduler_started", tasks=len(self._tasks))

    async def stop(self) -> None:
        """Cancel every sweep and wait for it to finish."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        log.info("moderation_scheduler_stopped")

    async def _run_loop(
        self, name: str, interval: float, tick: Callable[[], Awaitable[None]]
    ) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception as e:
                log.error("scheduler_tick_failed", sweep=name, error=str(e))
                self._stats.errors += 1
                self._stats.last_error = str(e)

    async def run_flush_check(self) -> None:
        """Flush the buffer if its timeout trigger has fired."""
        trigger = self._pipeline.should_flush()
        if trigger is None:
            return
        await self._pipeline.flush(trigger)
        self._stats.flushes += 1
        self._stats.last_flush = datetime.now(UTC)

    async def run_raid_check(self) -> None:
        if self._raid is None:
            return
        expired = await self._raid.check_expiry()
        self._stats.raid_expiries += len(expired)

    async def run_decay(self) -> None:
        if self._warnings is None:
            return
        self._stats.warnings_decayed += await self._warnings.decay_all()
