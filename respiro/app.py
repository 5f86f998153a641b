"""
Application Wiring
==================

Builds the full agent from configuration: store, sampler, capture, gateway,
baseline, suppression model, engine, monitoring loop, feedback recorder and
sleep/wake watcher.

Preferences come from the store; when no preferences row exists yet, the
configuration supplies the defaults (active hours, screenshot interval).
The baseline is restored from the preferences record at startup and saved
back on shutdown. The monitoring loop re-reads the record on every refresh,
so edits made by another process (``respiro hours``) reach a running agent.

Usage:
    app = await create_app(RespiroConfig.load())
    await app.start()
    ...
    await app.stop()
"""

import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from respiro.baseline import BaselineSnapshot, BaselineTracker
from respiro.capture import FrameSource, ScreenCapture
from respiro.classifier import ClassificationGateway, ClaudeVisionClassifier, VisionClassifier
from respiro.config import RespiroConfig
from respiro.context import LearningRefresher
from respiro.db import close_db
from respiro.engine import EngineSnapshot, NudgeEngine
from respiro.errors import ConfigurationMissing, StoreIOFailure
from respiro.feedback import FeedbackRecorder
from respiro.monitor import MonitoringLoop, SleepWakeWatcher
from respiro.ranking import PreferenceRanker
from respiro.records import ActiveHours, UserPreferences
from respiro.sampler import ActiveWindowSampler, BehaviorSampler
from respiro.store import EventStore
from respiro.suppression import SuppressionModel

logger = logging.getLogger(__name__)


def default_preferences(config: RespiroConfig) -> UserPreferences:
    """Preferences used until the user saves their own."""
    return UserPreferences(
        active_hours=resolve_active_hours(config),
        screenshot_interval=int(config.intervals.base),
    )


def resolve_active_hours(config: RespiroConfig) -> Optional[ActiveHours]:
    """Configured active hours, or None (always active) when not set."""
    try:
        return config.active_hours()
    except ConfigurationMissing:
        logger.debug("No active hours configured, nudges allowed at any time")
        return None


async def load_preferences(store: EventStore, config: RespiroConfig) -> UserPreferences:
    defaults = default_preferences(config)
    try:
        return await store.load_preferences(defaults)
    except StoreIOFailure as e:
        logger.warning("Could not read preferences, using defaults: %s", e)
        return defaults


@dataclass
class RespiroApp:
    """The assembled agent."""
    config: RespiroConfig
    store: EventStore
    preferences: UserPreferences
    baseline: BaselineTracker
    suppression: SuppressionModel
    engine: NudgeEngine
    monitor: MonitoringLoop
    feedback: FeedbackRecorder
    sampler: BehaviorSampler
    watcher: Optional[SleepWakeWatcher] = None

    async def start(self, watch_sleep: bool = True) -> None:
        start_sampler = getattr(self.sampler, "start", None)
        if start_sampler is not None:
            await start_sampler()
        await self.monitor.refresh()
        await self.monitor.start()
        if watch_sleep:
            self.watcher = SleepWakeWatcher(self.monitor.on_system_wake)
            self.watcher.start()

    async def stop(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
            self.watcher = None
        await self.monitor.stop()
        stop_sampler = getattr(self.sampler, "stop", None)
        if stop_sampler is not None:
            await stop_sampler()
        await self.save_state()

    async def save_state(self) -> None:
        """
        Persist the baseline and the current learned-pattern summary. The
        stored row is re-read first so settings edited while we ran (active
        hours, favourite practices, interval) are kept.
        """
        try:
            preferences = await self.store.load_preferences(self.preferences)
            preferences.baseline = self.baseline.snapshot.to_dict()
            preferences.learned_patterns = self.engine.snapshot.learned_patterns.summary
            await self.store.save_preferences(preferences)
        except StoreIOFailure as e:
            logger.warning("Could not save preferences: %s", e)
            return
        self.preferences = preferences

    async def close(self) -> None:
        await close_db()


async def create_app(
    config: Optional[RespiroConfig] = None,
    store: Optional[EventStore] = None,
    sampler: Optional[BehaviorSampler] = None,
    capture: Optional[FrameSource] = None,
    classifier: Optional[VisionClassifier] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> RespiroApp:
    """
    Assemble the agent. Collaborators not passed in get their default
    implementation. Raises ConfigurationMissing when the default classifier
    is needed and ANTHROPIC_API_KEY is not set.
    """
    config = config or RespiroConfig.load()

    if classifier is None:
        if not os.environ.get("ANTHROPIC_API_KEY"):
            raise ConfigurationMissing("ANTHROPIC_API_KEY")
        classifier = ClaudeVisionClassifier(config.classifier, clock=clock)

    store = store or await EventStore.open(config.data_path)
    preferences = await load_preferences(store, config)

    baseline = BaselineTracker(
        alpha=config.baseline_alpha,
        min_samples=config.baseline_min_samples,
        snapshot=BaselineSnapshot.from_dict(preferences.baseline),
    )
    suppression = SuppressionModel(config.cooldowns)
    intervals = replace(config.intervals, base=float(preferences.screenshot_interval))

    engine = NudgeEngine(
        sampler=sampler or ActiveWindowSampler(),
        capture=capture or ScreenCapture(config.classifier.max_image_edge, config.classifier.jpeg_quality),
        gateway=ClassificationGateway.from_config(classifier, config.classifier),
        suppression=suppression,
        baseline=baseline,
        store=store,
        snapshot=EngineSnapshot(
            preferred_practices=tuple(preferences.preferred_practice_ids),
            active_hours=preferences.active_hours,
        ),
        clock=clock,
        idle_pause_after=intervals.idle_pause_after,
    )
    refresher = LearningRefresher(
        store,
        PreferenceRanker(min_samples=config.ranker_min_samples),
        window_days=config.cooldowns.pattern_window_days,
        clock=clock,
        defaults=default_preferences(config),
    )
    monitor = MonitoringLoop(
        engine,
        intervals,
        refresher,
        clock=clock,
        pinned_practices=tuple(preferences.preferred_practice_ids),
    )
    feedback = FeedbackRecorder(store, suppression, monitor, clock=clock)

    return RespiroApp(
        config=config,
        store=store,
        preferences=preferences,
        baseline=baseline,
        suppression=suppression,
        engine=engine,
        monitor=monitor,
        feedback=feedback,
        sampler=engine.sampler,
    )
