"""Exception hierarchy for the moderation core."""

from __future__ import annotations


class ModDirectorError(Exception):
    """Base exception for all moderation core errors."""


class ConfigurationError(ModDirectorError):
    """Settings or pattern configuration could not be loaded."""


class InvalidPatternError(ModDirectorError):
    """A filter pattern failed to compile."""

    def __init__(self, reason: str, pattern: str | None = None, category: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.pattern = pattern
        self.category = category


class RateLimitedError(ModDirectorError):
    """The remote classifier asked us to back off."""

    def __init__(self, retry_after: float):
        super().__init__(f"Rate limited, retry after {retry_after:.0f}s")
        self.retry_after = retry_after


class RemoteAnalysisError(ModDirectorError):
    """The remote classifier failed or returned something unusable."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class InternalStateConflictError(ModDirectorError):
    """An internal invariant was violated."""


class StoreUnavailableError(ModDirectorError):
    """The persistent store could not be reached."""
