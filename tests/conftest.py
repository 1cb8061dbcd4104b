"""Pytest fixtures for Mod-Director tests."""

from __future__ import annotations

import itertools
from collections.abc import Callable

import pytest

from moddirector.config import get_settings
from moddirector.moderation.actions import QueuedActionDispatcher
from moddirector.moderation.models import BufferedMessage
from moddirector.moderation.pipeline import InboundMessage
from moddirector.moderation.store import InMemoryModerationStore


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Make sure every test builds Settings from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryModerationStore:
    return InMemoryModerationStore()


@pytest.fixture
def dispatcher() -> QueuedActionDispatcher:
    return QueuedActionDispatcher()


@pytest.fixture
def make_message() -> Callable[..., InboundMessage]:
    """Factory for inbound messages with unique ids."""
    ids = itertools.count(1)

    def _make(
        content: str = "hello there",
        *,
        author_id: int = 42,
        channel_id: int = 100,
        guild_id: int | None = 500,
        author_name: str = "someone",
        is_bot: bool = False,
        message_id: int | None = None,
    ) -> InboundMessage:
        return InboundMessage(
            message_id=message_id if message_id is not None else next(ids),
            content=content,
            author_id=author_id,
            author_name=author_name,
            channel_id=channel_id,
            guild_id=guild_id,
            is_bot=is_bot,
        )

    return _make


@pytest.fixture
def make_buffered() -> Callable[..., BufferedMessage]:
    """Factory for buffered messages."""

    def _make(
        message_id: int,
        content: str = "some text",
        *,
        author_id: int = 42,
        channel_id: int = 100,
        guild_id: int | None = 500,
    ) -> BufferedMessage:
        return BufferedMessage(
            message_id=message_id,
            content=content,
            author_id=author_id,
            channel_id=channel_id,
            guild_id=guild_id,
        )

    return _make
