"""Data models shared across the moderation pipeline."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from moddirector.errors import InternalStateConflictError

# Severity thresholds are fixed, not configurable
HIGH_SEVERITY_THRESHOLD = 0.7
MEDIUM_SEVERITY_THRESHOLD = 0.4


class PatternType(StrEnum):
    """Layer 1 pattern categories, in evaluation priority order."""

    SLUR = "slur"
    INVITE_LINK = "invite_link"
    PHISHING_URL = "phishing_url"


class SeverityLevel(StrEnum):
    """Coarse bucket derived from a continuous severity score."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_score(cls, score: float) -> SeverityLevel:
        """Classify a severity score.

        >>> SeverityLevel.from_score(0.8)
        <SeverityLevel.HIGH: 'high'>
        >>> SeverityLevel.from_score(0.4)
        <SeverityLevel.MEDIUM: 'medium'>
        """
        if score >= HIGH_SEVERITY_THRESHOLD:
            return cls.HIGH
        if score >= MEDIUM_SEVERITY_THRESHOLD:
            return cls.MEDIUM
        return cls.LOW


# Severity assigned to an instant Layer 1 match
PATTERN_SEVERITY: dict[PatternType, SeverityLevel] = {
    PatternType.SLUR: SeverityLevel.HIGH,
    PatternType.INVITE_LINK: SeverityLevel.MEDIUM,
    PatternType.PHISHING_URL: SeverityLevel.HIGH,
}


class DetectionLayer(StrEnum):
    """Which layer detected a violation."""

    REGEX_FILTER = "regex"
    SEMANTIC_ANALYZER = "ai"


class FlushTrigger(StrEnum):
    """Why a buffered batch was dispatched."""

    COUNT_THRESHOLD = "count_threshold"
    TIMEOUT = "timeout"
    MANUAL = "manual"


@dataclass(frozen=True)
class BufferedMessage:
    """A message held for batch semantic analysis."""

    message_id: int
    content: str
    author_id: int
    channel_id: int
    guild_id: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class FilterPass:
    """No Layer 1 pattern matched."""

    @property
    def is_violation(self) -> bool:
        return False


@dataclass(frozen=True)
class FilterViolation:
    """A Layer 1 pattern matched."""

    reason: str
    pattern_type: PatternType

    @property
    def is_violation(self) -> bool:
        return True


FilterResult = FilterPass | FilterViolation

PASS = FilterPass()


@dataclass
class Violation:
    """A violation returned by the semantic analyzer."""

    message_id: str
    reason: str
    severity: float

    @property
    def severity_level(self) -> SeverityLevel:
        return SeverityLevel.from_score(self.severity)


def hash_content(content: str) -> str:
    """First 8 bytes of the SHA-256 digest, hex encoded (16 chars)."""
    return hashlib.sha256(content.encode("utf-8")).digest()[:8].hex()


@dataclass
class ViolationReport:
    """Fully materialised violation for notification and audit."""

    message_id: int
    author_id: int
    channel_id: int
    reason: str
    severity: SeverityLevel
    detection_layer: DetectionLayer
    content_hash: str
    timestamp: datetime
    guild_id: int | None = None

    def is_complete(self) -> bool:
        """Check that reason and content hash are both present."""
        return bool(self.reason) and bool(self.content_hash)

    def requires_mention(self) -> bool:
        """High severity violations mention the moderator role."""
        return self.severity == SeverityLevel.HIGH

    @classmethod
    def build(
        cls,
        *,
        message_id: int | None,
        author_id: int | None,
        channel_id: int | None,
        reason: str | None,
        severity: SeverityLevel | None,
        detection_layer: DetectionLayer | None,
        content: str | None,
        guild_id: int | None = None,
        timestamp: datetime | None = None,
    ) -> ViolationReport:
        """Build a report, hashing *content*.

        Raises:
            InternalStateConflictError: If a required field is missing.
        """
        required = {
            "message_id": message_id,
            "author_id": author_id,
            "channel_id": channel_id,
            "reason": reason,
            "severity": severity,
            "detection_layer": detection_layer,
            "content": content,
        }
        missing = [name for name, value in required.items() if value is None]
        if missing:
            raise InternalStateConflictError(f"{', '.join(missing)} required")

        return cls(
            message_id=message_id,  # type: ignore[arg-type]
            author_id=author_id,  # type: ignore[arg-type]
            channel_id=channel_id,  # type: ignore[arg-type]
            reason=reason,  # type: ignore[arg-type]
            severity=severity,  # type: ignore[arg-type]
            detection_layer=detection_layer,  # type: ignore[arg-type]
            content_hash=hash_content(content),  # type: ignore[arg-type]
            timestamp=timestamp or datetime.now(UTC),
            guild_id=guild_id,
        )
