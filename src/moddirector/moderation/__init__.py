"""Moderation package: layered message screening and progressive discipline.

Public API
----------
- :class:`PipelineOrchestrator` routes messages through every layer
- :class:`PatternFilter`, :class:`PatternSet`: Layer 1 regex matching
- :class:`MessageBuffer`, :class:`SemanticAnalyzer`: Layer 2 batching and analysis
- :class:`WarningEscalation`, :class:`WarningLevel`: Layer 3 discipline
- :class:`RaidDetector`: mass-join and message-flood detection
- :class:`ModerationScheduler`: background sweeps
"""

from moddirector.moderation.actions import ActionDispatcher, QueuedActionDispatcher
from moddirector.moderation.analyzer import AnalysisResult, SemanticAnalyzer
from moddirector.moderation.buffer import MessageBuffer
from moddirector.moderation.context import ContextMessage, ContextTracker, ConversationContext
from moddirector.moderation.models import (
    BufferedMessage,
    DetectionLayer,
    FlushTrigger,
    PatternType,
    SeverityLevel,
    Violation,
    ViolationReport,
)
from moddirector.moderation.pattern_filter import PatternFilter, PatternSet
from moddirector.moderation.pipeline import (
    GuildCounters,
    InboundMessage,
    MessageOutcome,
    PipelineOrchestrator,
)
from moddirector.moderation.raid import RaidConfig, RaidDetector, RaidModeStatus
from moddirector.moderation.scheduler import ModerationScheduler
from moddirector.moderation.store import InMemoryModerationStore, ModerationStore
from moddirector.moderation.warnings import UserWarning, WarningEscalation, WarningLevel

__all__ = [
    "ActionDispatcher",
    "AnalysisResult",
    "BufferedMessage",
    "ContextMessage",
    "ContextTracker",
    "ConversationContext",
    "DetectionLayer",
    "FlushTrigger",
    "GuildCounters",
    "InMemoryModerationStore",
    "InboundMessage",
    "MessageBuffer",
    "MessageOutcome",
    "ModerationScheduler",
    "ModerationStore",
    "PatternFilter",
    "PatternSet",
    "PatternType",
    "PipelineOrchestrator",
    "QueuedActionDispatcher",
    "RaidConfig",
    "RaidDetector",
    "RaidModeStatus",
    "SemanticAnalyzer",
    "SeverityLevel",
    "UserWarning",
    "Violation",
    "ViolationReport",
    "WarningEscalation",
    "WarningLevel",
]
