"""
Shared fixtures and fakes for the Respiro test suite.
"""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from respiro.baseline import BaselineTracker
from respiro.capture import CapturedFrame
from respiro.classifier import ClassificationGateway
from respiro.db import close_db
from respiro.engine import NudgeEngine
from respiro.errors import CaptureFailure, StoreIOFailure
from respiro.records import (
    BehaviorMetrics,
    BehaviorSample,
    Classification,
    Nudge,
    NudgeType,
    SystemContext,
    Weather,
)
from respiro.store import EventStore
from respiro.suppression import SuppressionModel


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2026, 3, 10, 10, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, minutes=minutes, hours=hours)
        return self.now


class FakeSampler:
    """Returns the same sample (or raises) every time."""

    def __init__(self, app: str = "Code", idle_seconds: float = 0.0, on_call: bool = False, error=None):
        self.app = app
        self.idle_seconds = idle_seconds
        self.on_call = on_call
        self.error = error
        self.metrics = BehaviorMetrics(
            context_switches_per_minute=4.0,
            session_duration=600.0,
            application_focus={app: 0.8, "Mail": 0.2},
        )
        self.calls = 0

    async def sample(self) -> BehaviorSample:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return BehaviorSample(
            metrics=self.metrics,
            system=SystemContext(
                active_app=self.app,
                idle_seconds=self.idle_seconds,
                is_on_video_call=self.on_call,
            ),
        )


class FakeCapture:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def capture_frame(self) -> CapturedFrame:
        self.calls += 1
        if self.fail:
            raise CaptureFailure("no display")
        return CapturedFrame(jpeg=b"\xff\xd8fake\xff\xd9", width=16, height=9)


class FakeClassifier:
    """Replays queued results; an exception in the queue is raised."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def queue(self, *results) -> None:
        self.results.extend(results)

    async def classify(self, frame, context, effort):
        self.calls.append((context, effort))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


class FlakyStore:
    """In-memory entry writer failing the first ``failures`` writes."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.entries = []
        self.attempts = 0

    async def add_stress_entry(self, entry):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreIOFailure("add_stress_entry", OSError("disk full"))
        entry.id = len(self.entries) + 1
        self.entries.append(entry)
        return entry


def make_classification(
    weather: Weather = Weather.STORMY,
    confidence: float = 0.9,
    nudge_type=NudgeType.PRACTICE,
    practice_id: str = "box-breathing",
    message: str = "Try a minute of box breathing",
    rationale: str = "Many notifications and an error dialog",
) -> Classification:
    nudge = None
    if nudge_type is not None:
        nudge = Nudge(nudge_type=nudge_type, message=message, practice_id=practice_id)
    return Classification(
        weather=weather,
        confidence=confidence,
        signals=("notifications", "error dialog"),
        nudge=nudge,
        rationale=rationale,
    )


def make_engine(clock, classifier=None, sampler=None, capture=None, store=None, suppression=None, **kwargs) -> NudgeEngine:
    """NudgeEngine wired to fakes, with retry delays disabled."""
    gateway = ClassificationGateway(
        classifier if classifier is not None else FakeClassifier(make_classification()),
        retry_delay=0,
    )
    return NudgeEngine(
        sampler or FakeSampler(),
        capture or FakeCapture(),
        gateway,
        suppression or SuppressionModel(),
        BaselineTracker(),
        store if store is not None else FlakyStore(),
        clock=clock,
        store_retry_delay=0,
        **kwargs,
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(temp_dir):
    """EventStore backed by a SQLite file in a temporary directory."""
    store = await EventStore.open(temp_dir)
    yield store
    await close_db()
