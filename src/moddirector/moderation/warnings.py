"""Progressive discipline: warn, timeout, kick, ban.

Each violation escalates a user's level in a guild by one step. Levels
decay one step at a time once a user has gone 24 hours without a
violation; records that decay back to ``NONE`` are deleted.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import IntEnum
from typing import TYPE_CHECKING

from moddirector.errors import StoreUnavailableError
from moddirector.logging import get_logger

if TYPE_CHECKING:
    from moddirector.moderation.store import ModerationStore

log = get_logger("moddirector.moderation.warnings")

DECAY_AFTER = timedelta(hours=24)


class WarningLevel(IntEnum):
    """Discipline tier on the fixed escalation ladder."""

    NONE = 0
    WARNING = 1
    SHORT_TIMEOUT = 2
    LONG_TIMEOUT = 3
    KICK = 4
    BAN = 5

    def escalate(self, kicked_before: bool = False) -> WarningLevel:
        """Next level after one more violation.

        ``KICK`` only becomes ``BAN`` once the user has actually been kicked.
        """
        if self is WarningLevel.BAN:
            return WarningLevel.BAN
        if self is WarningLevel.KICK:
            return WarningLevel.BAN if kicked_before else WarningLevel.KICK
        return WarningLevel(self + 1)

    def decay(self) -> WarningLevel:
        """One level down. ``NONE`` and ``BAN`` never change."""
        if self in (WarningLevel.NONE, WarningLevel.BAN):
            return self
        return WarningLevel(self - 1)

    @property
    def timeout_duration_secs(self) -> int | None:
        return _TIMEOUTS.get(self)

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_TIMEOUTS: dict[WarningLevel, int] = {
    WarningLevel.SHORT_TIMEOUT: 600,
    WarningLevel.LONG_TIMEOUT: 3600,
}

_DESCRIPTIONS: dict[WarningLevel, str] = {
    WarningLevel.NONE: "No warnings",
    WarningLevel.WARNING: "Warning issued",
    WarningLevel.SHORT_TIMEOUT: "10-minute timeout",
    WarningLevel.LONG_TIMEOUT: "1-hour timeout",
    WarningLevel.KICK: "Kicked from server",
    WarningLevel.BAN: "Permanently banned",
}


@dataclass
class UserWarning:
    """Warning state for one (user, guild) pair."""

    user_id: int
    guild_id: int
    level: WarningLevel = WarningLevel.NONE
    kicked_before: bool = False
    last_violation: datetime | None = None


@dataclass
class ViolationRecord:
    """Audit entry for a single recorded violation."""

    user_id: int
    guild_id: int
    message_id: int
    reason: str
    severity: str
    detection_type: str
    action_taken: WarningLevel
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class WarningEscalation:
    """Escalation state machine backed by a :class:`ModerationStore`.

    Read-escalate-write for a given (user, guild) is serialised by a
    per-key lock, so concurrent violations for the same user observe
    strictly increasing levels.
    """

    def __init__(
        self,
        store: ModerationStore,
        *,
        decay_after: timedelta = DECAY_AFTER,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._decay_after = decay_after
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: dict[tuple[int, int], asyncio.Lock] = {}
        self._lock_users: dict[tuple[int, int], int] = {}

    @contextlib.asynccontextmanager
    async def _locked(self, user_id: int, guild_id: int) -> AsyncIterator[None]:
        """Hold the (user, guild) lock; the entry is dropped once nobody needs it."""
        key = (user_id, guild_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def record_violation(
        self,
        user_id: int,
        guild_id: int,
        message_id: int,
        reason: str,
        severity: str,
        detection_type: str,
    ) -> WarningLevel:
        """Escalate the user by one step and record the violation.

        Returns:
            The user's new warning level.

        Raises:
            StoreUnavailableError: The store failed; nothing was escalated.
        """
        async with self._locked(user_id, guild_id):
            try:
                warning = await self._store.get_warning(user_id, guild_id)
                if warning is None:
                    warning = UserWarning(user_id=user_id, guild_id=guild_id)

                now = self._clock()
                level = warning.level.escalate(warning.kicked_before)

                # The escalated level is only saved once the violation is on record
                await self._store.record_violation(
                    ViolationRecord(
                        user_id=user_id,
                        guild_id=guild_id,
                        message_id=message_id,
                        reason=reason,
                        severity=str(severity),
                        detection_type=str(detection_type),
                        action_taken=level,
                        timestamp=now,
                    )
                )
                warning.level = level
                warning.last_violation = now
                await self._store.save_warning(warning)
            except StoreUnavailableError as e:
                log.error(
                    "violation_not_recorded",
                    user_id=user_id,
                    guild_id=guild_id,
                    message_id=message_id,
                    error=str(e),
                )
                raise

        log.info(
            "warning_escalated",
            user_id=user_id,
            guild_id=guild_id,
            level=warning.level.name,
            detection_type=str(detection_type),
        )
        return warning.level

    async def get_warning(self, user_id: int, guild_id: int) -> UserWarning:
        """Current warning state; a fresh ``NONE`` record if there is none."""
        warning = await self._store.get_warning(user_id, guild_id)
        return warning or UserWarning(user_id=user_id, guild_id=guild_id)

    async def get_violations(
        self, user_id: int, guild_id: int, limit: int = 10
    ) -> list[ViolationRecord]:
        return await self._store.get_violations(user_id, guild_id, limit=limit)

    async def mark_kicked(self, user_id: int, guild_id: int) -> None:
        """Flag the user as kicked so their next offence is a ban."""
        async with self._locked(user_id, guild_id):
            warning = await self._store.get_warning(user_id, guild_id)
            if warning is None:
                warning = UserWarning(user_id=user_id, guild_id=guild_id)
            warning.kicked_before = True
            await self._store.save_warning(warning)
        log.info("user_marked_kicked", user_id=user_id, guild_id=guild_id)

    async def clear(self, user_id: int, guild_id: int) -> None:
        """Drop all warning state for the user in this guild."""
        async with self._locked(user_id, guild_id):
            await self._store.delete_warning(user_id, guild_id)
        log.info("warnings_cleared", user_id=user_id, guild_id=guild_id)

    async def decay_all(self, now: datetime | None = None) -> int:
        """Drop every stale warning by one level.

        A warning is stale when its last violation is older than the decay
        window. ``NONE`` and ``BAN`` are left alone.

        Returns:
            Number of warnings decayed.
        """
        now = now or self._clock()
        cutoff = now - self._decay_after
        decayed = 0

        for candidate in await self._store.list_warnings():
            if candidate.level in (WarningLevel.NONE, WarningLevel.BAN):
                continue
            if candidate.last_violation is None or candidate.last_violation >= cutoff:
                continue

            async with self._locked(candidate.user_id, candidate.guild_id):
                # Re-read under the lock; a violation may have landed since listing
                warning = await self._store.get_warning(candidate.user_id, candidate.guild_id)
                if warning is None or warning.last_violation is None:
                    continue
                if warning.last_violation >= cutoff:
                    continue
                if warning.level in (WarningLevel.NONE, WarningLevel.BAN):
                    continue

                warning.level = warning.level.decay()
                if warning.level is WarningLevel.NONE:
                    await self._store.delete_warning(warning.user_id, warning.guild_id)
                else:
                    await self._store.save_warning(warning)
            decayed += 1

        if decayed:
            log.info("warnings_decayed", count=decayed)
        return decayed
