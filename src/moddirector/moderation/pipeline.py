"""Three-layer moderation pipeline.

Layer 1: Regex pattern filter (~0ms, every message)
Layer 2: Batched semantic analysis (buffered, count/timeout triggered)
Layer 3: Progressive discipline via :class:`WarningEscalation`

When the classifier is unavailable the pipeline runs regex-only; messages
that pass Layer 1 are not buffered. A failed batch is returned to the
buffer, so the next timeout flush retries it and restores availability on
success.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from moddirector.errors import (
    InternalStateConflictError,
    RateLimitedError,
    RemoteAnalysisError,
    StoreUnavailableError,
)
from moddirector.logging import get_logger
from moddirector.moderation.actions import (
    ActionDispatcher,
    render_summary_notice,
    render_violation_notice,
)
from moddirector.moderation.buffer import MessageBuffer
from moddirector.moderation.context import ContextMessage, ContextTracker
from moddirector.moderation.models import (
    PATTERN_SEVERITY,
    BufferedMessage,
    DetectionLayer,
    FilterViolation,
    FlushTrigger,
    SeverityLevel,
    Violation,
    ViolationReport,
)
from moddirector.moderation.pattern_filter import PatternFilter
from moddirector.moderation.warnings import WarningLevel

if TYPE_CHECKING:
    from moddirector.moderation.analyzer import SemanticAnalyzer
    from moddirector.moderation.raid import RaidDetector, RaidTrigger
    from moddirector.moderation.store import ModerationStore
    from moddirector.moderation.warnings import WarningEscalation

log = get_logger("moddirector.moderation.pipeline")


@dataclass(frozen=True)
class InboundMessage:
    """A chat message as delivered by the platform adapter."""

    message_id: int
    content: str
    author_id: int
    author_name: str
    channel_id: int
    guild_id: int | None = None
    is_bot: bool = False
    reply_to_author_id: int | None = None


@dataclass
class GuildCounters:
    """In-memory moderation counters for one guild."""

    messages_processed: int = 0
    regex_violations: int = 0
    semantic_violations: int = 0
    high_severity: int = 0
    medium_severity: int = 0

    @property
    def total_violations(self) -> int:
        return self.regex_violations + self.semantic_violations

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "messages_processed": self.messages_processed,
            "regex_violations": self.regex_violations,
            "semantic_violations": self.semantic_violations,
            "high_severity": self.high_severity,
            "medium_severity": self.medium_severity,
            "total_violations": self.total_violations,
        }


class MessageOutcome(StrEnum):
    """Where a message ended up after :meth:`PipelineOrchestrator.process_message`."""

    IGNORED = "ignored"
    BLOCKED = "blocked"
    BUFFERED = "buffered"
    PASSED = "passed"


class PipelineOrchestrator:
    """Route messages through the moderation layers and request actions."""

    def __init__(
        self,
        *,
        pattern_filter: PatternFilter,
        buffer: MessageBuffer,
        context_tracker: ContextTracker,
        dispatcher: ActionDispatcher,
        warnings: WarningEscalation | None = None,
        analyzer: SemanticAnalyzer | None = None,
        store: ModerationStore | None = None,
        raid_detector: RaidDetector | None = None,
        mod_role_id: int | None = None,
    ) -> None:
        self._filter = pattern_filter
        self._buffer = buffer
        self._context = context_tracker
        self._dispatcher = dispatcher
        self._warnings = warnings
        self._analyzer = analyzer
        self._store = store
        self._raid = raid_detector
        self._mod_role_id = mod_role_id
        self._classifier_available = analyzer is not None
        self._flush_lock = asyncio.Lock()
        self._counters: dict[int, GuildCounters] = {}

    @property
    def buffer(self) -> MessageBuffer:
        return self._buffer

    def is_classifier_available(self) -> bool:
        return self._classifier_available and self._analyzer is not None

    def set_classifier_available(self, available: bool) -> None:
        if available != self._classifier_available:
            log.info("classifier_availability_changed", available=available)
        self._classifier_available = available

    def guild_counters(self, guild_id: int) -> GuildCounters:
        """Snapshot of the counters for *guild_id*."""
        return replace(self._counters.get(guild_id) or GuildCounters())

    def reset_counters(self, guild_id: int) -> GuildCounters:
        """Return the guild's counters and start it from zero."""
        return self._counters.pop(guild_id, None) or GuildCounters()

    def _counters_for(self, guild_id: int | None) -> GuildCounters | None:
        if guild_id is None:
            return None
        return self._counters.setdefault(guild_id, GuildCounters())

    def _count_violation(
        self, guild_id: int | None, layer: DetectionLayer, severity: SeverityLevel
    ) -> None:
        counters = self._counters_for(guild_id)
        if counters is None:
            return
        if layer is DetectionLayer.REGEX_FILTER:
            counters.regex_violations += 1
        else:
            counters.semantic_violations += 1
        if severity is SeverityLevel.HIGH:
            counters.high_severity += 1
        elif severity is SeverityLevel.MEDIUM:
            counters.medium_severity += 1

    def should_flush(self) -> FlushTrigger | None:
        """Timeout trigger from the buffer, polled by the scheduler."""
        return self._buffer.should_flush()

    async def handle_join(
        self, guild_id: int, user_id: int, account_age_days: int
    ) -> RaidTrigger | None:
        """Feed a member join to the raid detector, if one is attached."""
        if self._raid is None:
            return None
        trigger = await self._raid.record_join(guild_id, user_id, account_age_days)
        if trigger is not None:
            log.warning("raid_detected", guild_id=guild_id, trigger=repr(trigger))
        return trigger

    async def process_message(self, message: InboundMessage) -> MessageOutcome:
        """Run one message through the pipeline.

        Raises:
            StoreUnavailableError: A Layer 1 violation could not be recorded.
        """
        if message.is_bot:
            return MessageOutcome.IGNORED

        counters = self._counters_for(message.guild_id)
        if counters is not None:
            counters.messages_processed += 1

        if self._raid is not None and message.guild_id is not None:
            trigger = await self._raid.record_message(
                message.guild_id, message.author_id, message.content
            )
            if trigger is not None:
                log.warning("raid_detected", guild_id=message.guild_id, trigger=repr(trigger))

        await self._context.add_message(
            ContextMessage(
                message_id=message.message_id,
                author_id=message.author_id,
                author_name=message.author_name,
                content=message.content,
                channel_id=message.channel_id,
                reply_to_author_id=message.reply_to_author_id,
            )
        )

        # ---- Layer 1: Regex filter ----
        result = self._filter.evaluate(message.content)
        if isinstance(result, FilterViolation):
            await self._handle_filter_violation(message, result)
            return MessageOutcome.BLOCKED

        # ---- Layer 2: Buffer for semantic analysis ----
        if not self.is_classifier_available():
            return MessageOutcome.PASSED

        trigger = self._buffer.add(
            BufferedMessage(
                message_id=message.message_id,
                content=message.content,
                author_id=message.author_id,
                channel_id=message.channel_id,
                guild_id=message.guild_id,
            )
        )
        if trigger is FlushTrigger.COUNT_THRESHOLD:
            await self.flush(trigger)
        return MessageOutcome.BUFFERED

    async def _handle_filter_violation(
        self, message: InboundMessage, violation: FilterViolation
    ) -> None:
        severity = PATTERN_SEVERITY[violation.pattern_type]
        reason = f"{violation.reason} ({violation.pattern_type.value})"

        report = ViolationReport.build(
            message_id=message.message_id,
            author_id=message.author_id,
            channel_id=message.channel_id,
            guild_id=message.guild_id,
            reason=reason,
            severity=severity,
            detection_layer=DetectionLayer.REGEX_FILTER,
            content=message.content,
        )

        self._count_violation(message.guild_id, DetectionLayer.REGEX_FILTER, severity)
        await self._dispatcher.request_delete(report.channel_id, report.message_id)
        await self._dispatcher.request_notify(
            report.channel_id, render_violation_notice(report, self._mod_role_id)
        )

        log.info(
            "filter_violation",
            message_id=message.message_id,
            author_id=message.author_id,
            pattern_type=violation.pattern_type.value,
            content_hash=report.content_hash,
        )

        if message.guild_id is None or self._warnings is None:
            return

        level = await self._escalate(
            message.guild_id,
            message.author_id,
            message.message_id,
            reason,
            severity,
            DetectionLayer.REGEX_FILTER,
        )
        await self._dispatcher.request_warning_action(
            message.guild_id, message.author_id, level, reason
        )

    async def _escalate(
        self,
        guild_id: int,
        user_id: int,
        message_id: int,
        reason: str,
        severity: SeverityLevel,
        layer: DetectionLayer,
    ) -> WarningLevel:
        if self._warnings is None:
            raise InternalStateConflictError("escalation requested without a warning system")
        level = await self._warnings.record_violation(
            user_id, guild_id, message_id, reason, severity.value, layer.value
        )
        if level is WarningLevel.KICK:
            await self._warnings.mark_kicked(user_id, guild_id)
        return level

    async def flush(self, trigger: FlushTrigger = FlushTrigger.MANUAL) -> list[ViolationReport]:
        """Send the buffered batch to the classifier and act on the result.

        Classifier failures never escape: the classifier is marked
        unavailable and the batch goes back to the buffer.

        Returns:
            Reports for every violation acted on (Medium severity or above).
        """
        if self._analyzer is None:
            return []

        async with self._flush_lock:
            messages = self._buffer.flush()
            if not messages:
                return []

            log.debug("buffer_flushed", count=len(messages), trigger=trigger.value)

            first = messages[0]
            rules = await self._server_rules(first.guild_id)
            context = await self._context.get_context(first.channel_id, rules)

            try:
                result = await self._analyzer.analyze(messages, context)
            except RateLimitedError as e:
                log.warning(
                    "analysis_rate_limited", retry_after=e.retry_after, count=len(messages)
                )
                self.set_classifier_available(False)
                self._buffer.return_messages(messages)
                return []
            except RemoteAnalysisError as e:
                log.error("analysis_failed", error=str(e), count=len(messages))
                self.set_classifier_available(False)
                self._buffer.return_messages(messages)
                return []

            self.set_classifier_available(True)

            if result.coordinated_harassment.is_valid():
                log.warning(
                    "coordinated_harassment_detected",
                    target_user_id=result.coordinated_harassment.target_user_id,
                    participants=result.coordinated_harassment.participant_ids,
                )
            if result.escalation_detected:
                log.warning("escalation_detected", escalating_user_id=result.escalating_user_id)

            return await self._act_on_violations(messages, result.violations)

    async def _server_rules(self, guild_id: int | None) -> str | None:
        if self._store is None or guild_id is None:
            return None
        try:
            return await self._store.get_server_rules(guild_id)
        except StoreUnavailableError as e:
            log.warning("server_rules_unavailable", guild_id=guild_id, error=str(e))
            return None

    async def _act_on_violations(
        self, messages: list[BufferedMessage], violations: list[Violation]
    ) -> list[ViolationReport]:
        by_id = {str(m.message_id): m for m in messages}

        # Discipline is per (user, guild); DMs group under guild None
        reports: dict[tuple[int, int | None], list[ViolationReport]] = defaultdict(list)
        levels: dict[tuple[int, int | None], WarningLevel] = {}
        channels: dict[tuple[int, int | None], int] = {}
        seen: set[str] = set()

        for violation in violations:
            if violation.message_id in seen:
                log.debug("violation_duplicate", message_id=violation.message_id)
                continue
            seen.add(violation.message_id)

            original = by_id.get(violation.message_id)
            if original is None:
                log.debug("violation_unknown_message", message_id=violation.message_id)
                continue

            severity = violation.severity_level
            if severity is SeverityLevel.LOW:
                continue

            report = ViolationReport.build(
                message_id=original.message_id,
                author_id=original.author_id,
                channel_id=original.channel_id,
                guild_id=original.guild_id,
                reason=violation.reason,
                severity=severity,
                detection_layer=DetectionLayer.SEMANTIC_ANALYZER,
                content=original.content,
            )
            await self._dispatcher.request_delete(original.channel_id, original.message_id)
            self._count_violation(original.guild_id, DetectionLayer.SEMANTIC_ANALYZER, severity)

            key = (original.author_id, original.guild_id)
            reports[key].append(report)
            channels[key] = original.channel_id

            log.info(
                "analysis_violation",
                message_id=original.message_id,
                author_id=original.author_id,
                guild_id=original.guild_id,
                severity=severity.value,
                content_hash=report.content_hash,
            )

            if original.guild_id is None or self._warnings is None:
                continue

            try:
                level = await self._escalate(
                    original.guild_id,
                    original.author_id,
                    original.message_id,
                    violation.reason,
                    severity,
                    DetectionLayer.SEMANTIC_ANALYZER,
                )
            except StoreUnavailableError as e:
                log.error(
                    "escalation_failed",
                    message_id=original.message_id,
                    author_id=original.author_id,
                    guild_id=original.guild_id,
                    error=str(e),
                )
                continue
            levels[key] = max(levels.get(key, WarningLevel.NONE), level)

        for (user_id, guild_id), user_reports in reports.items():
            level = levels.get((user_id, guild_id), WarningLevel.WARNING)
            if guild_id is not None:
                await self._dispatcher.request_warning_action(
                    guild_id, user_id, level, user_reports[0].reason
                )
            await self._dispatcher.request_notify(
                channels[(user_id, guild_id)], render_summary_notice(user_id, user_reports, level)
            )
            log.info(
                "violation_summary_sent",
                user_id=user_id,
                guild_id=guild_id,
                violations=len(user_reports),
            )

        return [r for user_reports in reports.values() for r in user_reports]
