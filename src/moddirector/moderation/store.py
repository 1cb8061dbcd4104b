"""Persistence interface consumed by the moderation core.

The core never assumes a backing format. Every call is awaitable and may
fail; implementations raise :class:`~moddirector.errors.StoreUnavailableError`
when the backend cannot be reached.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace

from moddirector.moderation.warnings import UserWarning, ViolationRecord


class ModerationStore(ABC):
    """Abstract store for warnings, violation history and server rules."""

    @abstractmethod
    async def get_warning(self, user_id: int, guild_id: int) -> UserWarning | None:
        """Fetch the warning record for a user in a guild, if any."""

    @abstractmethod
    async def save_warning(self, warning: UserWarning) -> None:
        """Insert or replace a warning record."""

    @abstractmethod
    async def delete_warning(self, user_id: int, guild_id: int) -> None:
        """Remove a warning record. Missing records are not an error."""

    @abstractmethod
    async def list_warnings(self) -> list[UserWarning]:
        """All stored warning records."""

    @abstractmethod
    async def record_violation(self, record: ViolationRecord) -> None:
        """Append a violation to the audit history."""

    @abstractmethod
    async def get_violations(
        self, user_id: int, guild_id: int, limit: int = 10
    ) -> list[ViolationRecord]:
        """Most recent violations for a user, newest first."""

    @abstractmethod
    async def get_server_rules(self, guild_id: int) -> str | None:
        """Free-text server rules for a guild, if configured."""

    @abstractmethod
    async def set_server_rules(self, guild_id: int, rules: str) -> None:
        """Replace the server rules for a guild."""


class InMemoryModerationStore(ModerationStore):
    """Process-local store. Records are copied in and out."""

    def __init__(self) -> None:
        self._warnings: dict[tuple[int, int], UserWarning] = {}
        self._violations: list[ViolationRecord] = []
        self._rules: dict[int, str] = {}
        self._lock = asyncio.Lock()

    async def get_warning(self, user_id: int, guild_id: int) -> UserWarning | None:
        async with self._lock:
            warning = self._warnings.get((user_id, guild_id))
            return replace(warning) if warning else None

    async def save_warning(self, warning: UserWarning) -> None:
        async with self._lock:
            self._warnings[(warning.user_id, warning.guild_id)] = replace(warning)

    async def delete_warning(self, user_id: int, guild_id: int) -> None:
        async with self._lock:
            self._warnings.pop((user_id, guild_id), None)

    async def list_warnings(self) -> list[UserWarning]:
        async with self._lock:
            return [replace(w) for w in self._warnings.values()]

    async def record_violation(self, record: ViolationRecord) -> None:
        async with self._lock:
            self._violations.append(record)

    async def get_violations(
        self, user_id: int, guild_id: int, limit: int = 10
    ) -> list[ViolationRecord]:
        async with self._lock:
            matching = [
                v
                for v in reversed(self._violations)
                if v.user_id == user_id and v.guild_id == guild_id
            ]
        matching.sort(key=lambda v: v.timestamp, reverse=True)
        return matching[:limit]

    async def get_server_rules(self, guild_id: int) -> str | None:
        async with self._lock:
            return self._rules.get(guild_id)

    async def set_server_rules(self, guild_id: int, rules: str) -> None:
        async with self._lock:
            self._rules[guild_id] = rules
