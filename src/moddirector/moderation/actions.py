"""Chat-platform side effects requested by the moderation core.

The core only records *intent* (delete this message, time out that
user). Delivery, ordering and platform rate limits belong to the
dispatcher implementation.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass

from moddirector.logging import get_logger
from moddirector.moderation.models import DetectionLayer, SeverityLevel, ViolationReport
from moddirector.moderation.warnings import WarningLevel

log = get_logger("moddirector.moderation.actions")


@dataclass(frozen=True)
class DeleteMessage:
    channel_id: int
    message_id: int


@dataclass(frozen=True)
class SendNotification:
    channel_id: int
    content: str


@dataclass(frozen=True)
class TimeoutUser:
    guild_id: int
    user_id: int
    duration_secs: int
    reason: str


@dataclass(frozen=True)
class KickUser:
    guild_id: int
    user_id: int
    reason: str


@dataclass(frozen=True)
class BanUser:
    guild_id: int
    user_id: int
    reason: str


PendingAction = DeleteMessage | SendNotification | TimeoutUser | KickUser | BanUser


class ActionDispatcher(ABC):
    """Abstract sink for moderation actions."""

    @abstractmethod
    async def request_delete(self, channel_id: int, message_id: int) -> None:
        """Request deletion of a message."""

    @abstractmethod
    async def request_notify(self, channel_id: int, content: str) -> None:
        """Request a notification in a channel."""

    @abstractmethod
    async def request_timeout(
        self, guild_id: int, user_id: int, duration_secs: int, reason: str
    ) -> None:
        """Request a communication timeout for a member."""

    @abstractmethod
    async def request_kick(self, guild_id: int, user_id: int, reason: str) -> None:
        """Request removal of a member."""

    @abstractmethod
    async def request_ban(self, guild_id: int, user_id: int, reason: str) -> None:
        """Request a permanent ban."""

    async def request_warning_action(
        self, guild_id: int, user_id: int, level: WarningLevel, reason: str
    ) -> None:
        """Request whatever discipline *level* implies.

        ``NONE`` and ``WARNING`` need no platform action; the notification
        covers them.
        """
        duration = level.timeout_duration_secs
        if duration is not None:
            await self.request_timeout(guild_id, user_id, duration, reason)
        elif level is WarningLevel.KICK:
            await self.request_kick(guild_id, user_id, reason)
        elif level is WarningLevel.BAN:
            await self.request_ban(guild_id, user_id, reason)


class QueuedActionDispatcher(ActionDispatcher):
    """Collects requested actions in FIFO order for a delivery worker to drain."""

    def __init__(self) -> None:
        self._queue: deque[PendingAction] = deque()
        self._lock = asyncio.Lock()

    async def _push(self, action: PendingAction) -> None:
        async with self._lock:
            self._queue.append(action)
        log.debug("action_queued", action=type(action).__name__)

    async def request_delete(self, channel_id: int, message_id: int) -> None:
        await self._push(DeleteMessage(channel_id=channel_id, message_id=message_id))

    async def request_notify(self, channel_id: int, content: str) -> None:
        await self._push(SendNotification(channel_id=channel_id, content=content))

    async def request_timeout(
        self, guild_id: int, user_id: int, duration_secs: int, reason: str
    ) -> None:
        await self._push(
            TimeoutUser(
                guild_id=guild_id, user_id=user_id, duration_secs=duration_secs, reason=reason
            )
        )

    async def request_kick(self, guild_id: int, user_id: int, reason: str) -> None:
        await self._push(KickUser(guild_id=guild_id, user_id=user_id, reason=reason))

    async def request_ban(self, guild_id: int, user_id: int, reason: str) -> None:
        await self._push(BanUser(guild_id=guild_id, user_id=user_id, reason=reason))

    async def pending_count(self) -> int:
        async with self._lock:
            return len(self._queue)

    async def drain(self) -> list[PendingAction]:
        """Remove and return every queued action, oldest first."""
        async with self._lock:
            actions = list(self._queue)
            self._queue.clear()
        return actions


_SEVERITY_EMOJI = {
    SeverityLevel.HIGH: "\N{LARGE RED CIRCLE}",
    SeverityLevel.MEDIUM: "\N{LARGE YELLOW CIRCLE}",
    SeverityLevel.LOW: "\N{LARGE GREEN CIRCLE}",
}

_LAYER_NAMES = {
    DetectionLayer.REGEX_FILTER: "Regex Filter",
    DetectionLayer.SEMANTIC_ANALYZER: "AI Analysis",
}


def render_violation_notice(report: ViolationReport, mod_role_id: int | None = None) -> str:
    """Moderator-facing notice for a single violation.

    The moderator role is mentioned only for high severity reports.
    """
    mention = f"<@&{mod_role_id}> " if mod_role_id and report.requires_mention() else ""
    emoji = _SEVERITY_EMOJI[report.severity]
    return (
        f"{mention}{emoji}**Violation Detected**\n"
        f"**Severity:** {emoji} {report.severity.value.title()}\n"
        f"**Detection:** {_LAYER_NAMES[report.detection_layer]}\n"
        f"**User:** <@{report.author_id}>\n"
        f"**Channel:** <#{report.channel_id}>\n"
        f"**Reason:** {report.reason}\n"
        f"**Content Hash:** `{report.content_hash}`\n"
        f"**Time:** <t:{int(report.timestamp.timestamp())}:F>"
    )


def render_summary_notice(
    user_id: int, reports: Sequence[ViolationReport], level: WarningLevel
) -> str:
    """One notice covering every violation a user had in a batch."""
    lines = [
        "**Moderation Summary**",
        f"**User:** <@{user_id}>",
        f"**Violations:** {len(reports)}",
    ]
    lines.extend(f"- {r.reason} ({r.severity.value})" for r in reports)
    lines.append(f"**Action:** {level.description}")
    return "\n".join(lines)
