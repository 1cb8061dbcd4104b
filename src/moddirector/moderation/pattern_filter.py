"""Layer 1 moderation: instant regex pattern matching.

All checks are synchronous and run in ~0ms. Categories are evaluated in a
fixed priority order (slurs, invite links, phishing URLs) and the first
matching category wins.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from moddirector.config import RegexPatternConfig
from moddirector.errors import InvalidPatternError
from moddirector.logging import get_logger
from moddirector.moderation.models import PASS, FilterResult, FilterViolation, PatternType

log = get_logger("moddirector.moderation.pattern_filter")

_REASONS: dict[PatternType, str] = {
    PatternType.SLUR: "Matched slur pattern",
    PatternType.INVITE_LINK: "Matched invite link pattern",
    PatternType.PHISHING_URL: "Matched phishing URL pattern",
}


def _compile_group(category: PatternType, patterns: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise InvalidPatternError(
                f"Invalid {category.value} pattern {pattern!r}: {e}",
                pattern=pattern,
                category=category.value,
            ) from e
    return tuple(compiled)


@dataclass(frozen=True)
class PatternSet:
    """Compiled patterns for each category. Immutable once built."""

    slurs: tuple[re.Pattern[str], ...] = ()
    invite_links: tuple[re.Pattern[str], ...] = ()
    phishing_urls: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def compile(
        cls,
        slurs: Iterable[str] = (),
        invite_links: Iterable[str] = (),
        phishing_urls: Iterable[str] = (),
    ) -> PatternSet:
        """Compile string patterns.

        Raises:
            InvalidPatternError: If any pattern fails to compile.
        """
        return cls(
            slurs=_compile_group(PatternType.SLUR, slurs),
            invite_links=_compile_group(PatternType.INVITE_LINK, invite_links),
            phishing_urls=_compile_group(PatternType.PHISHING_URL, phishing_urls),
        )

    @classmethod
    def from_config(cls, config: RegexPatternConfig) -> PatternSet:
        return cls.compile(config.slurs, config.invite_links, config.phishing_urls)

    @classmethod
    def empty(cls) -> PatternSet:
        """A set that matches nothing."""
        return cls()

    def groups(self) -> tuple[tuple[PatternType, tuple[re.Pattern[str], ...]], ...]:
        """Pattern groups in priority order."""
        return (
            (PatternType.SLUR, self.slurs),
            (PatternType.INVITE_LINK, self.invite_links),
            (PatternType.PHISHING_URL, self.phishing_urls),
        )

    def __len__(self) -> int:
        return len(self.slurs) + len(self.invite_links) + len(self.phishing_urls)


class PatternFilter:
    """Layer 1 filter with runtime-swappable patterns."""

    def __init__(self, patterns: PatternSet | None = None) -> None:
        self._patterns = patterns or PatternSet.empty()
        self._lock = threading.Lock()

    @property
    def patterns(self) -> PatternSet:
        with self._lock:
            return self._patterns

    def evaluate(self, content: str) -> FilterResult:
        """Evaluate *content* against the current pattern set.

        Returns :data:`PASS` when nothing matches, otherwise a
        :class:`FilterViolation` tagged with the highest-priority category.
        """
        # Readers work on a snapshot, so a concurrent swap is never observed half-applied
        patterns = self.patterns

        for category, group in patterns.groups():
            if any(p.search(content) for p in group):
                return FilterViolation(reason=_REASONS[category], pattern_type=category)
        return PASS

    def update_patterns(self, patterns: PatternSet) -> None:
        """Replace the pattern set without a restart."""
        with self._lock:
            self._patterns = patterns
        log.info("filter_patterns_updated", pattern_count=len(patterns))

    def update_from_config(self, config: RegexPatternConfig) -> None:
        """Compile and apply *config*; the old set stays active on failure.

        Raises:
            InvalidPatternError: If any pattern fails to compile.
        """
        self.update_patterns(PatternSet.from_config(config))
