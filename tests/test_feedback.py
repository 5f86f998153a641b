"""
Tests for the Feedback Recorder
===============================

Dismissals and practice outcomes flowing into the store, the interruption
ledger and the monitoring loop.
"""

import pytest

from respiro.errors import SessionAlreadyClosed
from respiro.feedback import FeedbackRecorder
from respiro.monitor import MonitoringLoop
from respiro.practices import PracticeCategory
from respiro.records import DismissalType, Weather
from respiro.suppression import SuppressionModel

from conftest import make_engine


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def suppression():
    return SuppressionModel()


@pytest.fixture
def monitor(clock, suppression):
    return MonitoringLoop(make_engine(clock, suppression=suppression), clock=clock)


@pytest.fixture
def recorder(store, suppression, monitor, clock):
    return FeedbackRecorder(store, suppression, monitor, clock=clock)


# =============================================================================
# Dismissal Tests
# =============================================================================

class TestDismissals:
    """Tests for recording declined nudges."""

    @pytest.mark.asyncio
    async def test_dismissal_is_stored_and_counted(self, recorder, store, suppression, monitor, clock):
        """A dismissal lands in the store, the ledger and the schedule."""
        event = await recorder.record_dismissal(
            DismissalType.IM_FINE,
            Weather.CLOUDY,
            active_app="Mail",
            deviation=0.8,
            suggested_practice_id="box-breathing",
        )

        assert event.id is not None
        [stored] = await store.fetch_dismissals()
        assert stored.active_app == "Mail"
        assert suppression.ledger.consecutive_dismissals == 1
        assert suppression.ledger.last_dismissal_at == clock.now
        assert monitor.policy.current == 900
        assert monitor.refresh_pending

    @pytest.mark.asyncio
    async def test_dismiss_outcome(self, recorder, store, monitor):
        """Dismissing a cycle's nudge copies its context into the event."""
        outcome = await monitor.run_once()
        await recorder.dismiss_outcome(outcome, DismissalType.LATER)

        [stored] = await store.fetch_dismissals()
        assert stored.detected_weather == Weather.STORMY
        assert stored.suggested_practice_id == "box-breathing"
        assert stored.active_app == "Code"
        assert stored.signals == ["notifications", "error dialog"]

    @pytest.mark.asyncio
    async def test_dismiss_outcome_without_nudge(self, recorder, monitor, clock):
        await monitor.run_once()
        clock.advance(minutes=1)
        silent = await monitor.run_once()

        with pytest.raises(ValueError):
            await recorder.dismiss_outcome(silent, DismissalType.IM_FINE)

    @pytest.mark.asyncio
    async def test_works_without_monitor(self, store, suppression, clock):
        recorder = FeedbackRecorder(store, suppression, clock=clock)
        await recorder.record_dismissal(DismissalType.AUTO_DISMISSED, Weather.STORMY)
        assert suppression.ledger.consecutive_dismissals == 1


# =============================================================================
# Practice Tests
# =============================================================================

class TestPractices:
    """Tests for starting and completing practices."""

    @pytest.mark.asyncio
    async def test_completed_practice(self, recorder, store, suppression, monitor, clock):
        """Completing a practice resets dismissals and starts the post-practice cooldown."""
        await recorder.record_dismissal(DismissalType.IM_FINE, Weather.STORMY)
        session = await recorder.start_practice("box-breathing", Weather.STORMY)
        clock.advance(minutes=2)

        outcome = await recorder.complete_practice(session.id, Weather.CLEAR, what_helped="counting")
        closed = outcome.session

        assert outcome.alternative is None
        assert closed.was_completed
        assert closed.weather_after == Weather.CLEAR
        assert closed.ended_at == clock.now
        assert suppression.ledger.consecutive_dismissals == 0
        assert suppression.ledger.last_practice_completed_at == clock.now
        assert monitor.policy.current == 600
        assert monitor.refresh_pending

    @pytest.mark.asyncio
    async def test_abandoned_practice_keeps_ledger(self, recorder, suppression):
        session = await recorder.start_practice("body-scan", Weather.CLOUDY)
        outcome = await recorder.complete_practice(session.id, None, completed=False)

        assert not outcome.session.was_completed
        assert outcome.alternative is None
        assert suppression.ledger.last_practice_completed_at is None

    @pytest.mark.asyncio
    async def test_unhelpful_practice_suggests_another_category(self, recorder):
        """A practice that left the weather unchanged offers a shorter one of another kind."""
        session = await recorder.start_practice("coherent-breathing", Weather.STORMY)
        outcome = await recorder.complete_practice(session.id, Weather.STORMY)

        assert outcome.alternative is not None
        assert outcome.alternative.id == "stop-technique"
        assert outcome.alternative.category != PracticeCategory.BREATHING

    @pytest.mark.asyncio
    async def test_worse_weather_also_gets_a_second_chance(self, recorder):
        session = await recorder.start_practice("stop-technique", Weather.CLOUDY)
        outcome = await recorder.complete_practice(session.id, Weather.STORMY)

        assert outcome.alternative.id == "physiological-sigh"

    @pytest.mark.asyncio
    async def test_works_without_suppression_model(self, store, clock):
        """The one-shot CLI path records to the store only."""
        recorder = FeedbackRecorder(store, clock=clock)
        await recorder.record_dismissal(DismissalType.LATER, Weather.CLOUDY)
        session = await recorder.start_practice("box-breathing", Weather.STORMY)
        outcome = await recorder.complete_practice(session.id, Weather.CLEAR)

        assert outcome.session.was_completed
        assert len(await store.fetch_dismissals()) == 1

    @pytest.mark.asyncio
    async def test_second_close_is_rejected(self, recorder):
        session = await recorder.start_practice("box-breathing", Weather.STORMY)
        await recorder.complete_practice(session.id, Weather.CLOUDY)

        with pytest.raises(SessionAlreadyClosed):
            await recorder.complete_practice(session.id, Weather.CLEAR)

    @pytest.mark.asyncio
    async def test_unknown_practice_or_session(self, recorder):
        with pytest.raises(ValueError):
            await recorder.start_practice("levitation", Weather.CLEAR)
        with pytest.raises(KeyError):
            await recorder.complete_practice(12345, Weather.CLEAR)
