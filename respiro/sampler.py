"""
Behavior Sampler
================

Turns the user's recent activity into BehaviorMetrics and SystemContext.

``ActivityTracker`` is the pure part: it is fed focus changes, input ticks and
notification counts, and computes switch rate, session duration, per-app focus
fractions and the recent app sequence over a sliding window.

``ActiveWindowSampler`` polls the focused application through the platform's
command-line tools and feeds a tracker. OS coverage is best effort: an
unknown platform or a missing tool yields "unknown" rather than an error.

Usage:
    sampler = ActiveWindowSampler()
    await sampler.start()
    sample = await sampler.sample()
"""

import asyncio
import logging
import platform
import shutil
import subprocess
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from respiro.records import BehaviorMetrics, BehaviorSample, SystemContext

logger = logging.getLogger(__name__)

# Lower-cased substrings of conferencing apps
VIDEO_CALL_APPS = ("zoom", "facetime", "teams", "meet", "webex", "slack huddle", "discord")


class BehaviorSampler(Protocol):
    """Anything that can produce a BehaviorSample."""

    async def sample(self) -> BehaviorSample:
        ...


def is_video_call_app(app: Optional[str]) -> bool:
    if not app:
        return False
    lowered = app.lower()
    return any(name in lowered for name in VIDEO_CALL_APPS)


class ActivityTracker:
    """
    Sliding-window activity statistics.

    A "session" is continuous activity without an idle gap of at least
    ``session_gap``.
    """

    def __init__(
        self,
        window: timedelta = timedelta(minutes=10),
        session_gap: timedelta = timedelta(minutes=5),
        sequence_length: int = 10,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.window = window
        self.session_gap = session_gap
        self.clock = clock
        self._focus_events: deque = deque()  # (timestamp, app)
        self._sequence: deque = deque(maxlen=sequence_length)
        self._current_app: Optional[str] = None
        self._current_since: Optional[datetime] = None
        self._session_start: Optional[datetime] = None
        self._last_input: Optional[datetime] = None
        self._notifications = 0
        self.window_count = 0
        self.screen_sharing = False

    @property
    def current_app(self) -> Optional[str]:
        return self._current_app

    def record_focus(self, app: str, at: Optional[datetime] = None) -> None:
        """Record that ``app`` is in focus. Repeats of the current app are ignored."""
        if app == self._current_app:
            return
        at = at or self.clock()
        self.record_input(at)
        self._focus_events.append((at, app))
        self._sequence.append(app)
        self._current_app = app
        self._current_since = at

    def record_input(self, at: Optional[datetime] = None) -> None:
        """Record user activity (keyboard, mouse, focus)."""
        at = at or self.clock()
        if self._last_input is None or at - self._last_input >= self.session_gap:
            self._session_start = at
        self._last_input = at

    def set_idle(self, idle_seconds: float, now: Optional[datetime] = None) -> None:
        """Override idle time with a reading from the OS."""
        now = now or self.clock()
        last_input = now - timedelta(seconds=max(idle_seconds, 0.0))
        if self._last_input is None or last_input > self._last_input:
            self.record_input(last_input)

    def record_notification(self, count: int = 1) -> None:
        self._notifications += count

    def clear_notifications(self) -> None:
        self._notifications = 0

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or self.clock()
        if self._last_input is None:
            return 0.0
        return max((now - self._last_input).total_seconds(), 0.0)

    def metrics(self, now: Optional[datetime] = None) -> BehaviorMetrics:
        now = now or self.clock()
        start = now - self.window
        while self._focus_events and self._focus_events[0][0] < start:
            # Keep the last event before the window: it tells us what was in focus at its start
            if len(self._focus_events) > 1 and self._focus_events[1][0] <= start:
                self._focus_events.popleft()
            else:
                break

        switches = sum(1 for at, _ in self._focus_events if at >= start)
        minutes = self.window.total_seconds() / 60
        session = 0.0
        if self._session_start is not None and self.idle_seconds(now) < self.session_gap.total_seconds():
            session = (now - self._session_start).total_seconds()

        return BehaviorMetrics(
            context_switches_per_minute=switches / minutes if minutes else 0.0,
            session_duration=session,
            application_focus=self._focus_fractions(start, now),
            notification_accumulation=self._notifications,
            recent_app_sequence=tuple(self._sequence),
        )

    def _focus_fractions(self, start: datetime, now: datetime) -> dict:
        durations: dict[str, float] = {}
        events = list(self._focus_events)
        for i, (at, app) in enumerate(events):
            begin = max(at, start)
            end = events[i + 1][0] if i + 1 < len(events) else now
            seconds = (end - begin).total_seconds()
            if seconds > 0:
                durations[app] = durations.get(app, 0.0) + seconds
        total = sum(durations.values())
        if total <= 0:
            return {}
        return {app: seconds / total for app, seconds in durations.items()}

    def sample(self, now: Optional[datetime] = None) -> BehaviorSample:
        now = now or self.clock()
        app = self._current_app
        return BehaviorSample(
            metrics=self.metrics(now),
            system=SystemContext(
                active_app=app,
                window_count=self.window_count,
                idle_seconds=self.idle_seconds(now),
                is_on_video_call=is_video_call_app(app),
                is_screen_sharing=self.screen_sharing,
            ),
            taken_at=now,
        )


# =============================================================================
# Active window polling
# =============================================================================

def _run(cmd: list[str]) -> Optional[str]:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=1)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Command %s failed: %s", cmd[0], e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _active_app_linux() -> Optional[str]:
    if not shutil.which("xprop"):
        return None
    root = _run(["xprop", "-root", "_NET_ACTIVE_WINDOW"])
    if not root:
        return None
    # "_NET_ACTIVE_WINDOW(WINDOW): window id # 0x440000a"
    window_id = root.split()[-1]
    if window_id in ("0x0", "#"):
        return None
    props = _run(["xprop", "-id", window_id, "WM_CLASS"])
    if not props or "=" not in props:
        return None
    # 'WM_CLASS(STRING) = "navigator", "Firefox"'
    parts = [p.strip().strip('"') for p in props.split("=", 1)[1].split(",")]
    return parts[-1] or None


def _active_app_macos() -> Optional[str]:
    script = 'tell application "System Events" to get name of first application process whose frontmost is true'
    return _run(["osascript", "-e", script]) or None


def detect_idle_seconds() -> Optional[float]:
    """Seconds since the last keyboard or mouse input, or None if unknown."""
    system = platform.system()
    if system == "Linux" and shutil.which("xprintidle"):
        out = _run(["xprintidle"])
        return int(out) / 1000 if out and out.isdigit() else None
    if system == "Darwin":
        out = _run(["ioreg", "-c", "IOHIDSystem", "-d", "4"])
        for line in (out or "").splitlines():
            if "HIDIdleTime" in line:
                value = line.rsplit("=", 1)[-1].strip()
                return int(value) / 1e9 if value.isdigit() else None
    return None


def detect_active_app() -> Optional[str]:
    """Name of the focused application, or None if it cannot be determined."""
    system = platform.system()
    if system == "Linux":
        return _active_app_linux()
    if system == "Darwin":
        return _active_app_macos()
    return None


class ActiveWindowSampler:
    """
    BehaviorSampler backed by polling the focused application.

    ``poll_interval`` controls how often focus is checked between cycles.
    """

    def __init__(
        self,
        tracker: Optional[ActivityTracker] = None,
        poll_interval: float = 5.0,
        probe: Callable[[], Optional[str]] = detect_active_app,
        idle_probe: Callable[[], Optional[float]] = detect_idle_seconds,
    ):
        self.tracker = tracker or ActivityTracker()
        self.poll_interval = poll_interval
        self.probe = probe
        self.idle_probe = idle_probe
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> Optional[str]:
        app = await asyncio.to_thread(self.probe)
        if app:
            self.tracker.record_focus(app)
        idle = await asyncio.to_thread(self.idle_probe)
        if idle is not None:
            self.tracker.set_idle(idle)
        return app

    async def _poll_forever(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll_forever(), name="respiro-focus-poll")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def sample(self) -> BehaviorSample:
        if self._task is None:
            await self.poll_once()
        return self.tracker.sample()
