"""
Tests for the Event Store
=========================

Round trips through SQLite, ordering and filters, practice session closing
and the single-row preferences record.
"""

from datetime import datetime, timedelta

import pytest

from respiro.errors import SessionAlreadyClosed, StoreIOFailure
from respiro.records import (
    ActiveHours,
    DismissalEvent,
    DismissalType,
    NudgeType,
    PracticeSession,
    StressEntry,
    UserPreferences,
    Weather,
)
from respiro.store import read_or_empty

T0 = datetime(2026, 3, 10, 9, 0)


def entry(minutes: int, weather: Weather = Weather.CLOUDY, nudged: bool = False) -> StressEntry:
    return StressEntry(
        timestamp=T0 + timedelta(minutes=minutes),
        weather=weather,
        confidence=0.8,
        signals=["busy inbox"],
        nudge_type=NudgeType.PRACTICE if nudged else None,
        nudge_message="Breathe" if nudged else None,
        active_app="Mail",
        deviation=0.7,
    )


# =============================================================================
# Stress Entry Tests
# =============================================================================

class TestStressEntries:
    """Tests for stress entry persistence."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        """An entry reads back with every field intact."""
        saved = await store.add_stress_entry(entry(0, Weather.STORMY, nudged=True))
        assert saved.id is not None

        [loaded] = await store.fetch_stress_entries()
        assert loaded.timestamp == T0
        assert loaded.weather == Weather.STORMY
        assert loaded.signals == ["busy inbox"]
        assert loaded.nudge_type == NudgeType.PRACTICE
        assert loaded.nudge_message == "Breathe"
        assert loaded.deviation == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_sorted_by_timestamp(self, store):
        """Fetch order follows timestamps, not insertion order."""
        for minutes in (30, 0, 15):
            await store.add_stress_entry(entry(minutes))

        oldest_first = await store.fetch_stress_entries()
        assert [e.timestamp.minute for e in oldest_first] == [0, 15, 30]

        newest = await store.fetch_stress_entries(newest_first=True, limit=2)
        assert [e.timestamp.minute for e in newest] == [30, 15]

    @pytest.mark.asyncio
    async def test_time_filters(self, store):
        for minutes in (0, 60, 120):
            await store.add_stress_entry(entry(minutes))

        window = await store.fetch_stress_entries(
            since=T0 + timedelta(minutes=30),
            until=T0 + timedelta(minutes=120),
        )
        assert [e.timestamp for e in window] == [T0 + timedelta(minutes=60)]


# =============================================================================
# Practice Session Tests
# =============================================================================

class TestPracticeSessions:
    """Tests for starting and closing practice sessions."""

    @pytest.mark.asyncio
    async def test_close_session(self, store):
        """Closing sets weather-after, completion and the end time."""
        started = await store.add_practice_session(
            PracticeSession("box-breathing", T0, Weather.STORMY)
        )
        closed = await store.close_practice_session(
            started.id,
            Weather.CLEAR,
            was_completed=True,
            what_helped="slow exhale",
            ended_at=T0 + timedelta(minutes=2),
        )

        assert closed.weather_after == Weather.CLEAR
        assert closed.was_completed
        assert closed.improvement == 2

        reloaded = await store.get_practice_session(started.id)
        assert reloaded.what_helped == "slow exhale"
        assert reloaded.ended_at == T0 + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_weather_after_is_set_once(self, store):
        """A closed session cannot be closed again."""
        started = await store.add_practice_session(PracticeSession("box-breathing", T0, Weather.STORMY))
        await store.close_practice_session(started.id, Weather.CLOUDY, was_completed=True)

        with pytest.raises(SessionAlreadyClosed):
            await store.close_practice_session(started.id, Weather.CLEAR, was_completed=True)

    @pytest.mark.asyncio
    async def test_abandoned_session_is_closed(self, store):
        started = await store.add_practice_session(PracticeSession("body-scan", T0, Weather.CLOUDY))
        closed = await store.close_practice_session(started.id, None, was_completed=False)
        assert closed.is_closed
        assert closed.improvement is None

        with pytest.raises(SessionAlreadyClosed):
            await store.close_practice_session(started.id, Weather.CLEAR, was_completed=True)

    @pytest.mark.asyncio
    async def test_unknown_session(self, store):
        with pytest.raises(KeyError):
            await store.close_practice_session(999, Weather.CLEAR, was_completed=True)
        assert await store.get_practice_session(999) is None

    @pytest.mark.asyncio
    async def test_filter_by_practice(self, store):
        for i, practice_id in enumerate(["box-breathing", "body-scan", "box-breathing"]):
            await store.add_practice_session(
                PracticeSession(practice_id, T0 + timedelta(hours=i), Weather.CLOUDY)
            )
        sessions = await store.fetch_practice_sessions(practice_id="box-breathing")
        assert len(sessions) == 2
        latest = await store.fetch_practice_sessions(newest_first=True, limit=1)
        assert latest[0].started_at == T0 + timedelta(hours=2)


# =============================================================================
# Dismissal Tests
# =============================================================================

class TestDismissals:
    """Tests for dismissal events."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        await store.add_dismissal(DismissalEvent(
            timestamp=T0,
            detected_weather=Weather.CLOUDY,
            dismissal_type=DismissalType.LATER,
            active_app="Slack",
            deviation=1.2,
            suggested_practice_id="extended-exhale",
            signals=["many pings"],
        ))
        [event] = await store.fetch_dismissals(since=T0 - timedelta(days=1))
        assert event.dismissal_type == DismissalType.LATER
        assert event.suggested_practice_id == "extended-exhale"
        assert event.signals == ["many pings"]


# =============================================================================
# Preferences Tests
# =============================================================================

class TestPreferences:
    """Tests for the single-row preferences record."""

    @pytest.mark.asyncio
    async def test_defaults_before_first_save(self, store):
        prefs = await store.load_preferences()
        assert prefs.active_hours == ActiveHours(9, 18)

        custom = UserPreferences(active_hours=None)
        assert await store.load_preferences(custom) is custom

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        """Saved preferences replace the row and read back intact."""
        await store.save_preferences(UserPreferences(
            active_hours=ActiveHours(22, 6),
            preferred_practice_ids=["body-scan", "box-breathing"],
            learned_patterns="Dismissed 4 of 5 nudges in mail",
            baseline={"samples": 12, "stats": {}},
        ))
        await store.save_preferences(UserPreferences(
            active_hours=None,
            preferred_practice_ids=["body-scan"],
            baseline={"samples": 13, "stats": {}},
        ))

        prefs = await store.load_preferences()
        assert prefs.active_hours is None
        assert prefs.preferred_practice_ids == ["body-scan"]
        assert prefs.baseline == {"samples": 13, "stats": {}}
        assert prefs.learned_patterns == ""


# =============================================================================
# Failure Handling Tests
# =============================================================================

class TestReadOrEmpty:
    """Tests for treating read failures as empty history."""

    @pytest.mark.asyncio
    async def test_failure_becomes_empty(self):
        async def broken():
            raise StoreIOFailure("fetch_dismissals", OSError("locked"))

        assert await read_or_empty(broken(), "dismissals") == []

    @pytest.mark.asyncio
    async def test_success_passes_through(self, store):
        await store.add_stress_entry(entry(0))
        entries = await read_or_empty(store.fetch_stress_entries(), "stress entries")
        assert len(entries) == 1
