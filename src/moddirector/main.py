"""Wiring and entry point for Mod-Director."""

from __future__ import annotations

import asyncio

from moddirector.config import Settings, get_settings
from moddirector.logging import get_logger, setup_logging
from moddirector.moderation.actions import ActionDispatcher, QueuedActionDispatcher
from moddirector.moderation.analyzer import SemanticAnalyzer
from moddirector.moderation.buffer import MessageBuffer
from moddirector.moderation.context import ContextTracker
from moddirector.moderation.pattern_filter import PatternFilter, PatternSet
from moddirector.moderation.pipeline import PipelineOrchestrator
from moddirector.moderation.raid import RaidConfig, RaidDetector
from moddirector.moderation.scheduler import ModerationScheduler
from moddirector.moderation.store import InMemoryModerationStore, ModerationStore
from moddirector.moderation.warnings import WarningEscalation

log = get_logger("moddirector.main")


class ModDirector:
    """Application container: pipeline, background sweeps and HTTP client."""

    def __init__(
        self,
        *,
        pipeline: PipelineOrchestrator,
        scheduler: ModerationScheduler,
        store: ModerationStore,
        dispatcher: ActionDispatcher,
        pattern_filter: PatternFilter,
        raid_detector: RaidDetector,
        warnings: WarningEscalation,
        analyzer: SemanticAnalyzer | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.store = store
        self.dispatcher = dispatcher
        self.pattern_filter = pattern_filter
        self.raid_detector = raid_detector
        self.warnings = warnings
        self.analyzer = analyzer

    async def start(self) -> None:
        await self.scheduler.start()
        log.info("moddirector_started", classifier=self.analyzer is not None)

    async def stop(self) -> None:
        """Stop the sweeps and release the classifier client."""
        await self.scheduler.stop()
        if self.analyzer is not None:
            await self.analyzer.close()
        log.info("moddirector_stopped")


def build_pipeline(
    settings: Settings,
    store: ModerationStore | None = None,
    dispatcher: ActionDispatcher | None = None,
) -> ModDirector:
    """Construct every component from *settings*.

    Without a classifier API key the pipeline runs regex-only.

    Raises:
        ConfigurationError: The pattern file could not be loaded.
        InvalidPatternError: A configured pattern failed to compile.
    """
    store = store or InMemoryModerationStore()
    dispatcher = dispatcher or QueuedActionDispatcher()

    pattern_filter = PatternFilter(PatternSet.from_config(settings.load_patterns()))
    buffer = MessageBuffer(settings.buffer_flush_threshold, settings.buffer_timeout_secs)
    warnings = WarningEscalation(store)
    raid_detector = RaidDetector(RaidConfig.from_settings(settings))

    analyzer: SemanticAnalyzer | None = None
    if settings.gemini_api_key is not None:
        analyzer = SemanticAnalyzer(
            settings.gemini_api_key.get_secret_value(),
            api_url=settings.gemini_api_url,
            timeout=settings.gemini_timeout,
            requests_per_minute=settings.gemini_requests_per_minute,
        )
    else:
        log.warning("classifier_not_configured", mode="regex_only")

    pipeline = PipelineOrchestrator(
        pattern_filter=pattern_filter,
        buffer=buffer,
        context_tracker=ContextTracker(),
        dispatcher=dispatcher,
        warnings=warnings,
        analyzer=analyzer,
        store=store,
        raid_detector=raid_detector,
        mod_role_id=settings.mod_role_id,
    )
    scheduler = ModerationScheduler(
        pipeline,
        raid_detector=raid_detector,
        warnings=warnings,
        flush_interval=settings.flush_poll_interval,
        raid_check_interval=settings.raid_check_interval,
        decay_interval=settings.decay_interval,
    )

    return ModDirector(
        pipeline=pipeline,
        scheduler=scheduler,
        store=store,
        dispatcher=dispatcher,
        pattern_filter=pattern_filter,
        raid_detector=raid_detector,
        warnings=warnings,
        analyzer=analyzer,
    )


async def main() -> None:
    """Run the moderation core until interrupted."""
    settings = get_settings()
    setup_logging(settings)

    app = build_pipeline(settings)
    log.info(
        "starting_moddirector",
        environment=settings.environment,
        pattern_count=len(app.pattern_filter.patterns),
    )

    await app.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.stop()


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
