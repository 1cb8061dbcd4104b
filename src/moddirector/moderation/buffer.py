"""Double-buffered message accumulator for batch semantic analysis.

Messages collect in the *primary* slot. While a flush is handing the
primary contents off, writers are redirected to the *secondary* slot so
they never wait on the drain; the flush then moves secondary into primary.

::

    add() ──► primary ──flush()──► batch for analysis
                 ▲
    add() ──► secondary (only while flushing)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable

from moddirector.moderation.models import BufferedMessage, FlushTrigger

DEFAULT_FLUSH_THRESHOLD = 10
DEFAULT_TIMEOUT_SECS = 30.0


class MessageBuffer:
    """Accumulate messages and report count/timeout flush triggers."""

    def __init__(
        self,
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
        timeout_secs: float = DEFAULT_TIMEOUT_SECS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the buffer.

        Args:
            flush_threshold: Buffered messages that trigger a count flush.
            timeout_secs: Seconds since the last flush that trigger a timeout flush.
            clock: Monotonic time source (seconds).
        """
        self._flush_threshold = flush_threshold
        self._timeout_secs = timeout_secs
        self._clock = clock
        self._primary: list[BufferedMessage] = []
        self._secondary: list[BufferedMessage] = []
        self._flushing = False
        self._last_flush = clock()
        self._lock = threading.Lock()

    @property
    def flush_threshold(self) -> int:
        return self._flush_threshold

    @property
    def timeout_secs(self) -> float:
        return self._timeout_secs

    def add(self, message: BufferedMessage) -> FlushTrigger | None:
        """Buffer *message*. Returns a count trigger once the threshold is reached."""
        with self._lock:
            target = self._secondary if self._flushing else self._primary
            target.append(message)
            if len(target) >= self._flush_threshold:
                return FlushTrigger.COUNT_THRESHOLD
            return None

    def should_flush(self) -> FlushTrigger | None:
        """Return a timeout trigger if the buffer is non-empty and stale."""
        with self._lock:
            if not self._primary:
                return None
            if self._clock() - self._last_flush >= self._timeout_secs:
                return FlushTrigger.TIMEOUT
            return None

    def flush(self) -> list[BufferedMessage]:
        """Drain the primary slot and return its messages in insertion order."""
        batch = self._begin_flush()
        self._finish_flush()
        return batch

    def _begin_flush(self) -> list[BufferedMessage]:
        with self._lock:
            self._flushing = True
            batch = self._primary
            self._primary = []
            self._last_flush = self._clock()
        return batch

    def _finish_flush(self) -> None:
        with self._lock:
            # Anything added during the handoff becomes the next cycle's primary
            self._primary.extend(self._secondary)
            self._secondary = []
            self._flushing = False

    def return_messages(self, messages: Iterable[BufferedMessage]) -> None:
        """Put a previously flushed batch back in front of the primary slot."""
        with self._lock:
            self._primary = [*messages, *self._primary]

    def __len__(self) -> int:
        with self._lock:
            return len(self._primary)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @property
    def is_flushing(self) -> bool:
        with self._lock:
            return self._flushing

    @property
    def secondary_count(self) -> int:
        with self._lock:
            return len(self._secondary)
