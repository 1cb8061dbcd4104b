"""Raid detection: mass joins of new accounts and coordinated message floods.

Each guild keeps two sliding windows (joins, message hashes) and a raid
mode flag. Raid mode activates on the first trigger, is not re-armed by
later triggers, and expires a fixed time after activation. Expiry is
polled via :meth:`RaidDetector.check_expiry`.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from moddirector.logging import get_logger

if TYPE_CHECKING:
    from moddirector.config import Settings

log = get_logger("moddirector.moderation.raid")


@dataclass(frozen=True)
class MassJoin:
    """Too many joins in the window, mostly from new accounts."""

    count: int
    new_accounts: int


@dataclass(frozen=True)
class MessageFlood:
    """The same content posted by many distinct users."""

    count: int
    similarity: float


RaidTrigger = MassJoin | MessageFlood


@dataclass
class RaidModeStatus:
    """Raid mode state for one guild. ``triggered_at`` is on the detector clock."""

    active: bool = False
    triggered_at: float | None = None
    trigger_reason: RaidTrigger | None = None


@dataclass
class RaidConfig:
    """Thresholds for raid detection."""

    join_window_secs: float = 60.0
    join_threshold: int = 10
    new_account_days: int = 7
    new_account_ratio: float = 0.7
    message_window_secs: float = 30.0
    message_threshold: int = 5
    similarity_threshold: float = 0.8
    expiry_secs: float = 600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RaidConfig:
        return cls(
            join_window_secs=settings.raid_join_window_secs,
            join_threshold=settings.raid_join_threshold,
            new_account_days=settings.raid_new_account_days,
            new_account_ratio=settings.raid_new_account_ratio,
            message_window_secs=settings.raid_message_window_secs,
            message_threshold=settings.raid_message_threshold,
            similarity_threshold=settings.raid_similarity_threshold,
            expiry_secs=settings.raid_expiry_secs,
        )


@dataclass(frozen=True)
class _JoinRecord:
    timestamp: float
    user_id: int
    account_age_days: int


@dataclass(frozen=True)
class _MessageRecord:
    timestamp: float
    content_hash: str
    user_id: int


def normalized_hash(content: str) -> str:
    """Hash of lower-cased, stripped content used for flood matching."""
    normalized = content.lower().strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


class RaidDetector:
    """Per-guild raid detection with isolated state."""

    def __init__(
        self,
        config: RaidConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or RaidConfig()
        self._clock = clock
        self._joins: dict[int, deque[_JoinRecord]] = {}
        self._messages: dict[int, deque[_MessageRecord]] = {}
        self._status: dict[int, RaidModeStatus] = {}
        self._lock = asyncio.Lock()

    @property
    def config(self) -> RaidConfig:
        return self._config

    async def record_join(
        self, guild_id: int, user_id: int, account_age_days: int
    ) -> RaidTrigger | None:
        """Record a member join and check the join window.

        Returns:
            A :class:`MassJoin` trigger if the join pushed the guild over
            both thresholds, else None.
        """
        cfg = self._config
        async with self._lock:
            now = self._clock()
            window = self._joins.setdefault(guild_id, deque())
            window.append(_JoinRecord(now, user_id, account_age_days))

            cutoff = now - cfg.join_window_secs
            while window and window[0].timestamp < cutoff:
                window.popleft()

            total = len(window)
            if total < cfg.join_threshold:
                return None

            new_accounts = sum(1 for j in window if j.account_age_days < cfg.new_account_days)
            if new_accounts / total < cfg.new_account_ratio:
                return None

            trigger = MassJoin(count=total, new_accounts=new_accounts)
            self._activate(guild_id, trigger, now)

        return trigger

    async def record_message(self, guild_id: int, user_id: int, content: str) -> RaidTrigger | None:
        """Record a message and check the flood window.

        A flood needs enough distinct authors posting the same normalised
        content, and that content must make up enough of the window.
        """
        cfg = self._config
        content_hash = normalized_hash(content)

        async with self._lock:
            now = self._clock()
            window = self._messages.setdefault(guild_id, deque())
            window.append(_MessageRecord(now, content_hash, user_id))

            cutoff = now - cfg.message_window_secs
            while window and window[0].timestamp < cutoff:
                window.popleft()

            same = [m for m in window if m.content_hash == content_hash]
            distinct_authors = len({m.user_id for m in same})
            if distinct_authors < cfg.message_threshold:
                return None

            similarity = len(same) / len(window)
            if similarity < cfg.similarity_threshold:
                return None

            trigger = MessageFlood(count=distinct_authors, similarity=similarity)
            self._activate(guild_id, trigger, now)

        return trigger

    def _activate(self, guild_id: int, trigger: RaidTrigger, now: float) -> None:
        status = self._status.setdefault(guild_id, RaidModeStatus())
        if status.active:
            return
        status.active = True
        status.triggered_at = now
        status.trigger_reason = trigger
        log.warning("raid_mode_activated", guild_id=guild_id, trigger=type(trigger).__name__)

    async def is_raid_mode(self, guild_id: int) -> bool:
        async with self._lock:
            status = self._status.get(guild_id)
            return status is not None and status.active

    async def get_status(self, guild_id: int) -> RaidModeStatus:
        """Snapshot of the guild's raid status (inactive if never triggered)."""
        async with self._lock:
            status = self._status.get(guild_id)
            if status is None:
                return RaidModeStatus()
            return RaidModeStatus(status.active, status.triggered_at, status.trigger_reason)

    async def disable_raid_mode(self, guild_id: int) -> None:
        async with self._lock:
            status = self._status.get(guild_id)
            if status is not None:
                status.active = False
                status.triggered_at = None
                status.trigger_reason = None
        log.info("raid_mode_disabled", guild_id=guild_id)

    async def check_expiry(self) -> list[int]:
        """Deactivate raid mode wherever it has run past the expiry window.

        Returns:
            Guild ids whose raid mode expired in this sweep.
        """
        expired: list[int] = []
        async with self._lock:
            now = self._clock()
            for guild_id, status in self._status.items():
                if not status.active or status.triggered_at is None:
                    continue
                if now - status.triggered_at >= self._config.expiry_secs:
                    status.active = False
                    status.triggered_at = None
                    status.trigger_reason = None
                    expired.append(guild_id)

        for guild_id in expired:
            log.info("raid_mode_expired", guild_id=guild_id)
        return expired

    async def clear_guild(self, guild_id: int) -> None:
        """Forget all tracking data and raid state for a guild."""
        async with self._lock:
            self._joins.pop(guild_id, None)
            self._messages.pop(guild_id, None)
            self._status.pop(guild_id, None)
