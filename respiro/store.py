"""
Event Store
===========

Durable store for the nudge-decision core. From the core's point of view it
offers three append-only collections sorted by timestamp (stress entries,
practice sessions, dismissal events) and one single-row preferences record:

- insert
- fetch sorted / filtered
- update in place (closing a practice session, saving preferences)

Every SQLAlchemy or filesystem error is raised as StoreIOFailure so callers
only have one thing to catch.

Usage:
    store = await EventStore.open(Path("~/.respiro"))
    await store.add_stress_entry(entry)
    recent = await store.fetch_stress_entries(since=datetime.now() - timedelta(days=1))
"""

import functools
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from respiro.db.connection import init_db
from respiro.db.models import (
    DismissalEventModel,
    PracticeSessionModel,
    PreferencesModel,
    StressEntryModel,
)
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

logger = logging.getLogger(__name__)

PREFERENCES_ROW_ID = 1


def _store_operation(func):
    """Translate database and filesystem errors into StoreIOFailure."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (SQLAlchemyError, OSError) as e:
            logger.debug("Store operation %s failed: %s", func.__name__, e)
            raise StoreIOFailure(func.__name__, e) from e

    return wrapper


class EventStore:
    """Async store over SQLAlchemy + aiosqlite."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @classmethod
    async def open(cls, data_dir: Path) -> "EventStore":
        """Open (creating if needed) the database in ``data_dir``."""
        try:
            maker = await init_db(data_dir)
        except (SQLAlchemyError, OSError) as e:
            raise StoreIOFailure("open", e) from e
        return cls(maker)

    # -------------------------------------------------------------------------
    # Stress entries
    # -------------------------------------------------------------------------

    @_store_operation
    async def add_stress_entry(self, entry: StressEntry) -> StressEntry:
        async with self._session_maker() as session:
            row = StressEntryModel(
                timestamp=entry.timestamp,
                weather=entry.weather.value,
                confidence=entry.confidence,
                signals=list(entry.signals),
                nudge_type=entry.nudge_type.value if entry.nudge_type else None,
                nudge_message=entry.nudge_message,
                active_app=entry.active_app,
                deviation=entry.deviation,
            )
            session.add(row)
            await session.commit()
            entry.id = row.id
        return entry

    @_store_operation
    async def fetch_stress_entries(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[StressEntry]:
        """Fetch stress entries sorted by timestamp (oldest first unless newest_first)."""
        query = select(StressEntryModel)
        if since is not None:
            query = query.where(StressEntryModel.timestamp >= since)
        if until is not None:
            query = query.where(StressEntryModel.timestamp < until)
        if newest_first:
            query = query.order_by(StressEntryModel.timestamp.desc(), StressEntryModel.id.desc())
        else:
            query = query.order_by(StressEntryModel.timestamp, StressEntryModel.id)
        if limit is not None:
            query = query.limit(limit)

        async with self._session_maker() as session:
            result = await session.execute(query)
            return [_stress_entry_from_row(row) for row in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Practice sessions
    # -------------------------------------------------------------------------

    @_store_operation
    async def add_practice_session(self, practice: PracticeSession) -> PracticeSession:
        async with self._session_maker() as session:
            row = PracticeSessionModel(
                practice_id=practice.practice_id,
                started_at=practice.started_at,
                ended_at=practice.ended_at,
                weather_before=practice.weather_before.value,
                weather_after=practice.weather_after.value if practice.weather_after else None,
                was_completed=practice.was_completed,
                what_helped=practice.what_helped,
            )
            session.add(row)
            await session.commit()
            practice.id = row.id
        return practice

    @_store_operation
    async def get_practice_session(self, session_id: int) -> Optional[PracticeSession]:
        async with self._session_maker() as session:
            row = await session.get(PracticeSessionModel, session_id)
            return _practice_session_from_row(row) if row else None

    @_store_operation
    async def close_practice_session(
        self,
        session_id: int,
        weather_after: Optional[Weather],
        was_completed: bool,
        what_helped: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> PracticeSession:
        """
        Record the outcome of a practice session.

        weather_after can only be set once; closing an already closed session
        raises SessionAlreadyClosed. Raises KeyError for an unknown id.
        """
        async with self._session_maker() as session:
            row = await session.get(PracticeSessionModel, session_id)
            if row is None:
                raise KeyError(f"Unknown practice session: {session_id}")
            if row.weather_after is not None or row.ended_at is not None:
                raise SessionAlreadyClosed(session_id)

            row.weather_after = weather_after.value if weather_after else None
            row.was_completed = was_completed
            row.what_helped = what_helped
            row.ended_at = ended_at or datetime.now()
            await session.commit()
            return _practice_session_from_row(row)

    @_store_operation
    async def fetch_practice_sessions(
        self,
        since: Optional[datetime] = None,
        practice_id: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[PracticeSession]:
        query = select(PracticeSessionModel)
        if since is not None:
            query = query.where(PracticeSessionModel.started_at >= since)
        if practice_id is not None:
            query = query.where(PracticeSessionModel.practice_id == practice_id)
        if newest_first:
            query = query.order_by(PracticeSessionModel.started_at.desc(), PracticeSessionModel.id.desc())
        else:
            query = query.order_by(PracticeSessionModel.started_at, PracticeSessionModel.id)
        if limit is not None:
            query = query.limit(limit)

        async with self._session_maker() as session:
            result = await session.execute(query)
            return [_practice_session_from_row(row) for row in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Dismissals
    # -------------------------------------------------------------------------

    @_store_operation
    async def add_dismissal(self, event: DismissalEvent) -> DismissalEvent:
        async with self._session_maker() as session:
            row = DismissalEventModel(
                timestamp=event.timestamp,
                detected_weather=event.detected_weather.value,
                dismissal_type=event.dismissal_type.value,
                active_app=event.active_app,
                deviation=event.deviation,
                suggested_practice_id=event.suggested_practice_id,
                signals=list(event.signals),
            )
            session.add(row)
            await session.commit()
            event.id = row.id
        return event

    @_store_operation
    async def fetch_dismissals(
        self,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DismissalEvent]:
        query = select(DismissalEventModel)
        if since is not None:
            query = query.where(DismissalEventModel.timestamp >= since)
        query = query.order_by(DismissalEventModel.timestamp, DismissalEventModel.id)
        if limit is not None:
            query = query.limit(limit)

        async with self._session_maker() as session:
            result = await session.execute(query)
            return [_dismissal_from_row(row) for row in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    @_store_operation
    async def load_preferences(self, defaults: Optional[UserPreferences] = None) -> UserPreferences:
        """Load the preferences row, or ``defaults`` if it was never written."""
        async with self._session_maker() as session:
            row = await session.get(PreferencesModel, PREFERENCES_ROW_ID)
            if row is None:
                return defaults or UserPreferences()

            active_hours = None
            if row.active_hours_start is not None and row.active_hours_end is not None:
                active_hours = ActiveHours(row.active_hours_start, row.active_hours_end)
            return UserPreferences(
                active_hours=active_hours,
                screenshot_interval=row.screenshot_interval,
                preferred_practice_ids=list(row.preferred_practice_ids or []),
                learned_patterns=row.learned_patterns or "",
                baseline=row.baseline,
            )

    @_store_operation
    async def save_preferences(self, preferences: UserPreferences) -> None:
        async with self._session_maker() as session:
            row = await session.get(PreferencesModel, PREFERENCES_ROW_ID)
            if row is None:
                row = PreferencesModel(id=PREFERENCES_ROW_ID)
                session.add(row)

            hours = preferences.active_hours
            row.active_hours_start = hours.start_hour if hours else None
            row.active_hours_end = hours.end_hour if hours else None
            row.screenshot_interval = preferences.screenshot_interval
            row.preferred_practice_ids = list(preferences.preferred_practice_ids)
            row.learned_patterns = preferences.learned_patterns
            row.baseline = preferences.baseline
            row.updated_at = datetime.now()
            await session.commit()


# =============================================================================
# Row conversion
# =============================================================================

def _stress_entry_from_row(row: StressEntryModel) -> StressEntry:
    return StressEntry(
        id=row.id,
        timestamp=row.timestamp,
        weather=Weather.parse(row.weather),
        confidence=row.confidence,
        signals=list(row.signals or []),
        nudge_type=NudgeType.parse(row.nudge_type),
        nudge_message=row.nudge_message,
        active_app=row.active_app,
        deviation=row.deviation or 0.0,
    )


def _practice_session_from_row(row: PracticeSessionModel) -> PracticeSession:
    return PracticeSession(
        id=row.id,
        practice_id=row.practice_id,
        started_at=row.started_at,
        ended_at=row.ended_at,
        weather_before=Weather.parse(row.weather_before),
        weather_after=Weather.parse(row.weather_after) if row.weather_after else None,
        was_completed=bool(row.was_completed),
        what_helped=row.what_helped,
    )


def _dismissal_from_row(row: DismissalEventModel) -> DismissalEvent:
    return DismissalEvent(
        id=row.id,
        timestamp=row.timestamp,
        detected_weather=Weather.parse(row.detected_weather),
        dismissal_type=DismissalType(row.dismissal_type),
        active_app=row.active_app,
        deviation=row.deviation or 0.0,
        suggested_practice_id=row.suggested_practice_id,
        signals=list(row.signals or []),
    )


async def read_or_empty(coro: Any, what: str) -> list:
    """
    Await a store read, treating a StoreIOFailure as empty history.

    Read failures are never fatal: the caller continues as if cold-starting.
    """
    try:
        return await coro
    except StoreIOFailure as e:
        logger.warning("Could not read %s, continuing with empty history: %s", what, e)
        return []
