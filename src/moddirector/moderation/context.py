"""Sliding window of recent messages per channel for context-aware analysis."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

MAX_CONTEXT_MESSAGES = 10


@dataclass(frozen=True)
class ContextMessage:
    """A recent message kept for prompt context."""

    message_id: int
    author_id: int
    author_name: str
    content: str
    channel_id: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    reply_to_author_id: int | None = None


@dataclass
class ConversationContext:
    """Recent messages for one channel plus optional server rules."""

    recent_messages: list[ContextMessage] = field(default_factory=list)
    server_rules: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.recent_messages and not self.server_rules

    def format_for_prompt(self) -> str:
        """Render the window chronologically, followed by server rules."""
        parts: list[str] = []

        if self.recent_messages:
            parts.append("## Recent Conversation Context")
            parts.append("The following messages provide context for the conversation:")
            parts.append("")
            for msg in self.recent_messages:
                reply_info = (
                    f" (replying to user {msg.reply_to_author_id})"
                    if msg.reply_to_author_id is not None
                    else ""
                )
                parts.append(
                    f"[{msg.timestamp:%H:%M:%S}] {msg.author_name}{reply_info}: {msg.content}"
                )
            parts.append("")

        if self.server_rules:
            parts.append("## Server-Specific Rules")
            parts.append("The following rules have been set by the server administrators:")
            parts.append("")
            parts.append(self.server_rules)
            parts.append("")

        return "\n".join(parts)


class ContextTracker:
    """Bounded FIFO of recent messages for every channel."""

    def __init__(self, max_messages: int = MAX_CONTEXT_MESSAGES) -> None:
        self._max_messages = max_messages
        self._channels: dict[int, deque[ContextMessage]] = {}
        self._lock = asyncio.Lock()

    async def add_message(self, message: ContextMessage) -> None:
        """Append *message*; the oldest entry is dropped on overflow."""
        async with self._lock:
            window = self._channels.get(message.channel_id)
            if window is None:
                window = deque(maxlen=self._max_messages)
                self._channels[message.channel_id] = window
            window.append(message)

    async def get_context(
        self, channel_id: int, server_rules: str | None = None
    ) -> ConversationContext:
        """Snapshot the window for *channel_id*. Unknown channels yield an empty window."""
        async with self._lock:
            window = self._channels.get(channel_id)
            recent = list(window) if window else []
        return ConversationContext(recent_messages=recent, server_rules=server_rules)

    async def clear_channel(self, channel_id: int) -> None:
        async with self._lock:
            self._channels.pop(channel_id, None)

    async def clear_all(self) -> None:
        async with self._lock:
            self._channels.clear()

    async def message_count(self, channel_id: int) -> int:
        async with self._lock:
            window = self._channels.get(channel_id)
            return len(window) if window else 0
