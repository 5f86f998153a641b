"""
Monitoring Loop
===============

Owns the schedule. One asyncio task runs engine cycles back to back with an
adaptive wait between them, publishes the resulting state to subscribers, and
feeds learned-state refreshes back into the engine.

State is published as an immutable, versioned MonitorState. There is a single
writer (this loop); readers get a consistent snapshot and never see a
half-updated decision.

Scheduling rules:
- at most one cycle in flight (asyncio.Lock)
- ticks during a cycle coalesce; trigger_immediate wakes a pending wait but
  waits for an in-flight cycle
- waits are cancellable: the loop blocks on an asyncio.Event with a timeout
- learned state and the interruption ledger are reloaded from the store at
  most ``refresh_every`` seconds apart, before the cycle that needs them

Usage:
    monitor = MonitoringLoop(engine, IntervalConfig(), refresher)
    sub = monitor.subscribe_weather(lambda state: print(state.weather))
    await monitor.start()
    ...
    await monitor.stop()
    sub.unsubscribe()
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from respiro.config import IntervalConfig
from respiro.context import LearningRefresher
from respiro.engine import DIAG_USER_AWAY, CycleOutcome, CycleState, NudgeEngine
from respiro.patterns import LearnedPatterns
from respiro.records import EffortLevel, Nudge, SilenceDecision, ToolContext, Weather

logger = logging.getLogger(__name__)

# Window for "the user dismissed a nudge recently" when choosing request effort
RECENT_DISMISSAL_WINDOW = timedelta(hours=1)
RECENT_WEATHER_COUNT = 3


@dataclass(frozen=True)
class MonitorState:
    """Published loop state. Each publication bumps ``version``."""
    version: int = 0
    weather: Optional[Weather] = None
    is_monitoring: bool = False
    is_paused: bool = False
    diagnostic: Optional[str] = None
    last_silence: Optional[SilenceDecision] = None
    last_nudge: Optional[Nudge] = None
    last_state: Optional[CycleState] = None
    last_cycle_at: Optional[datetime] = None
    interval: float = 300.0

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "weather": self.weather.value if self.weather else None,
            "is_monitoring": self.is_monitoring,
            "is_paused": self.is_paused,
            "diagnostic": self.diagnostic,
            "last_silence": self.last_silence.to_dict() if self.last_silence else None,
            "last_nudge": self.last_nudge.to_dict() if self.last_nudge else None,
            "last_state": self.last_state.value if self.last_state else None,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "interval": self.interval,
        }


class Subscription:
    """Handle returned by subscribe_*; call unsubscribe() to stop receiving updates."""

    def __init__(self, registry: list, callback: Callable):
        self._registry = registry
        self._callback = callback
        registry.append(callback)

    @property
    def active(self) -> bool:
        return self._callback in self._registry

    def unsubscribe(self) -> None:
        if self._callback in self._registry:
            self._registry.remove(self._callback)


class IntervalPolicy:
    """
    Adaptive wait between cycles.

    Weather results set the interval; dismissals and completed practices
    override it until the next result.
    """

    def __init__(self, config: Optional[IntervalConfig] = None):
        self.config = config or IntervalConfig()
        self.current = self.config.base
        self.clear_streak = 0
        self.consecutive_dismissals = 0

    def on_weather(self, weather: Weather) -> float:
        cfg = self.config
        if weather == Weather.STORMY:
            self.clear_streak = 0
            self.current = cfg.stormy
        elif weather == Weather.CLEAR:
            self.clear_streak += 1
            if self.clear_streak >= cfg.clear_streak:
                self.current = min(max(self.current, cfg.base) * cfg.clear_multiplier, cfg.max_clear)
            else:
                self.current = cfg.base
        else:
            self.clear_streak = 0
            self.current = cfg.base
        return self.current

    def on_dismissal(self) -> float:
        self.consecutive_dismissals += 1
        if self.consecutive_dismissals >= 3:
            self.current = self.config.after_multiple_dismissals
        else:
            self.current = self.config.after_dismissal
        return self.current

    def on_practice_completed(self) -> float:
        self.consecutive_dismissals = 0
        self.current = self.config.after_practice
        return self.current

    def on_error(self) -> float:
        self.current = max(self.current, self.config.after_error)
        return self.current


class MonitoringLoop:
    """Schedules engine cycles and publishes their results."""

    def __init__(
        self,
        engine: NudgeEngine,
        intervals: Optional[IntervalConfig] = None,
        refresher: Optional[LearningRefresher] = None,
        clock: Callable[[], datetime] = datetime.now,
        pinned_practices: tuple = (),
    ):
        self.engine = engine
        self.intervals = intervals or IntervalConfig()
        self.refresher = refresher
        self.clock = clock
        self.pinned_practices = tuple(pinned_practices)
        self.policy = IntervalPolicy(self.intervals)

        self._state = MonitorState(interval=self.policy.current)
        self._weather_subscribers: list = []
        self._silence_subscribers: list = []

        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._wake_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._paused = False
        self._immediate = False
        self._refresh_pending = False
        self._last_refresh_at: Optional[datetime] = None

        self._recent_weathers: deque = deque(maxlen=RECENT_WEATHER_COUNT)
        self._dismissal_times: deque = deque()
        self._effort_hint: Optional[EffortLevel] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def refresh_pending(self) -> bool:
        return self._refresh_pending

    def _publish(self, **changes: Any) -> MonitorState:
        self._state = replace(
            self._state,
            version=self._state.version + 1,
            interval=self.policy.current,
            **changes,
        )
        return self._state

    def subscribe_weather(self, callback: Callable[[MonitorState], Any]) -> Subscription:
        """Receive the MonitorState after every completed cycle."""
        return Subscription(self._weather_subscribers, callback)

    def subscribe_silence(self, callback: Callable[[SilenceDecision], Any]) -> Subscription:
        """Receive each SilenceDecision."""
        return Subscription(self._silence_subscribers, callback)

    async def _notify(self, subscribers: list, value: Any) -> None:
        for callback in list(subscribers):
            try:
                result = callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber %r failed", callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._paused = False
        self._wake.clear()
        self._publish(is_monitoring=True, is_paused=False, diagnostic=None)
        self._task = asyncio.create_task(self._run(), name="respiro-monitor")
        logger.info("Monitoring started (interval %.0fs)", self.policy.current)

    async def stop(self, cancel_in_flight: bool = False) -> None:
        """
        Stop the loop. By default an in-flight cycle finishes first; with
        ``cancel_in_flight`` it is cancelled at its next suspension point.
        """
        self._stopping = True
        self._wake.set()
        if self._wake_task is not None:
            self._wake_task.cancel()
            self._wake_task = None

        task, self._task = self._task, None
        if task is not None:
            if cancel_in_flight:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._publish(is_monitoring=False)
        logger.info("Monitoring stopped")

    def pause(self) -> None:
        self._paused = True
        self._publish(is_paused=True)

    def resume(self) -> None:
        self._paused = False
        self._wake.set()
        self._publish(is_paused=False)

    def trigger_immediate(self) -> None:
        """Run a cycle as soon as the current one (if any) completes."""
        self._immediate = True
        self._wake.set()

    def on_system_wake(self) -> asyncio.Task:
        """Schedule a forced cycle ``wake_delay`` seconds after resume-from-sleep."""
        if self._wake_task is not None and not self._wake_task.done():
            self._wake_task.cancel()
        self._wake_task = asyncio.create_task(self._delayed_trigger(self.intervals.wake_delay))
        return self._wake_task

    async def _delayed_trigger(self, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("System woke up, forcing a cycle")
        self.trigger_immediate()

    async def _run(self) -> None:
        while not self._stopping:
            self._immediate = False
            if not self._paused:
                await self.run_once()
            if self._stopping:
                break
            await self._wait_next()

    async def _wait_next(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while not self._stopping and not self._immediate:
            timeout = None
            if not self._paused:
                timeout = started + self.policy.current - loop.time()
                if timeout <= 0:
                    return
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def request_effort(self) -> EffortLevel:
        """Effort for the next classifier request."""
        cutoff = self.clock() - RECENT_DISMISSAL_WINDOW
        while self._dismissal_times and self._dismissal_times[0] < cutoff:
            self._dismissal_times.popleft()
        effort = EffortLevel.determine(list(self._recent_weathers), len(self._dismissal_times))
        if self._effort_hint is not None and effort < self._effort_hint:
            effort = self._effort_hint
        return effort

    async def run_once(self) -> Optional[CycleOutcome]:
        """Run one cycle now (waiting for any in-flight cycle). Returns None if it crashed."""
        async with self._cycle_lock:
            if self._refresh_due():
                await self._refresh_quietly()

            try:
                outcome = await self.engine.run_cycle(self.request_effort())
            except Exception as e:
                logger.exception("Monitoring cycle failed")
                self.policy.on_error()
                state = self._publish(diagnostic=f"cycle failed: {e}", last_cycle_at=self.clock())
                await self._notify(self._weather_subscribers, state)
                return None

            await self._absorb(outcome)

            if self._refresh_pending:
                await self._refresh_quietly()
            return outcome

    async def _absorb(self, outcome: CycleOutcome) -> None:
        if outcome.classification is not None:
            self._recent_weathers.append(outcome.weather)
            self._effort_hint = outcome.classification.effort_hint
            self.policy.on_weather(outcome.weather)
            if outcome.entry is not None:
                base = self.engine.pending or self.engine.snapshot
                self.engine.stage(tool_context=base.tool_context.with_weather(outcome.entry))
        elif outcome.diagnostic != DIAG_USER_AWAY:
            self.policy.on_error()

        changes: dict = {
            "diagnostic": outcome.diagnostic,
            "last_state": outcome.state,
            "last_cycle_at": outcome.finished_at,
        }
        if outcome.weather is not None:
            changes["weather"] = outcome.weather
        if outcome.nudge is not None:
            changes["last_nudge"] = outcome.nudge
        if outcome.silence is not None:
            changes["last_silence"] = outcome.silence
        state = self._publish(**changes)

        await self._notify(self._weather_subscribers, state)
        if outcome.silence is not None:
            await self._notify(self._silence_subscribers, outcome.silence)

    # -------------------------------------------------------------------------
    # Learned state and feedback
    # -------------------------------------------------------------------------

    def set_learned_patterns(self, patterns: LearnedPatterns) -> None:
        self.engine.stage(learned_patterns=patterns)

    def set_preferred_practices(self, practice_ids) -> None:
        self.engine.stage(preferred_practices=tuple(practice_ids))

    def set_tool_context(self, context: ToolContext) -> None:
        self.engine.stage(tool_context=context)

    def set_active_hours(self, active_hours) -> None:
        self.engine.stage(active_hours=active_hours)

    def request_refresh(self) -> None:
        """Rebuild learned state after the next cycle."""
        self._refresh_pending = True

    async def refresh(self) -> None:
        """
        Rebuild learned state now and stage it for the next cycle. Also merges
        stored interruption history into the suppression ledger and picks up
        edited preferences (active hours, favourite practices).
        """
        self._refresh_pending = False
        if self.refresher is None:
            return
        self._last_refresh_at = self.clock()
        bundle = await self.refresher.rebuild(self.pinned_practices)
        self.engine.suppression.restore(bundle.entries, bundle.dismissals, bundle.sessions, self.clock())
        if bundle.preferences is not None:
            self.pinned_practices = tuple(bundle.preferences.preferred_practice_ids)
            self.set_active_hours(bundle.preferences.active_hours)
        self.set_learned_patterns(bundle.patterns)
        self.set_preferred_practices(bundle.tool_context.preferred_practices)
        self.set_tool_context(bundle.tool_context)

    def _refresh_due(self) -> bool:
        if self.refresher is None:
            return False
        if self._last_refresh_at is None:
            return True
        return self.clock() - self._last_refresh_at >= timedelta(seconds=self.intervals.refresh_every)

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except Exception:
            logger.exception("Refreshing learned state failed, keeping the previous state")

    def notify_dismissal(self, at: Optional[datetime] = None) -> None:
        self._dismissal_times.append(at or self.clock())
        self.policy.on_dismissal()
        self._reschedule()

    def notify_practice_completed(self, at: Optional[datetime] = None) -> None:
        self._dismissal_times.clear()
        self.policy.on_practice_completed()
        self._reschedule()

    def _reschedule(self) -> None:
        # A pending wait recomputes its deadline against the new interval
        self._publish()
        self._wake.set()


class SleepWakeWatcher:
    """
    Detects resume-from-sleep.

    The monotonic clock stops while the machine sleeps and the wall clock does
    not, so a jump in their difference means we just woke up.
    """

    def __init__(
        self,
        on_wake: Callable[[], Any],
        check_every: float = 30.0,
        threshold: float = 60.0,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.on_wake = on_wake
        self.check_every = check_every
        self.threshold = threshold
        self.wall_clock = wall_clock
        self.monotonic = monotonic
        self._last_wall = wall_clock()
        self._last_mono = monotonic()
        self._task: Optional[asyncio.Task] = None

    def check(self) -> bool:
        """Return True (and call on_wake) if a sleep gap was detected since the last check."""
        wall, mono = self.wall_clock(), self.monotonic()
        drift = (wall - self._last_wall) - (mono - self._last_mono)
        self._last_wall, self._last_mono = wall, mono
        if drift >= self.threshold:
            logger.info("Detected resume from sleep (%.0fs gap)", drift)
            self.on_wake()
            return True
        return False

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self.check_every)
            self.check()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._watch(), name="respiro-wake-watch")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
