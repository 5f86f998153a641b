"""
Feedback Recorder
=================

The backward path of the feedback loop. Dismissals and practice outcomes are
written to the store, fed into the suppression model's interruption ledger and
the loop's adaptive interval, and mark learned state for a refresh.

Without a live suppression model (the one-shot CLI commands) feedback only
reaches the store; a running loop picks it up on its next refresh.

A completed practice that left the weather unchanged (or worse) comes back
with a second-chance suggestion: a shorter practice from another category.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from respiro.engine import CycleOutcome
from respiro.monitor import MonitoringLoop
from respiro.practices import Practice, get_practice, suggest_alternative
from respiro.records import DismissalEvent, DismissalType, PracticeSession, Weather
from respiro.store import EventStore
from respiro.suppression import SuppressionModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PracticeOutcome:
    """A closed practice session and, when it did not help, another practice to try."""
    session: PracticeSession
    alternative: Optional[Practice] = None


class FeedbackRecorder:
    """Records user feedback and propagates it to the live components."""

    def __init__(
        self,
        store: EventStore,
        suppression: Optional[SuppressionModel] = None,
        monitor: Optional[MonitoringLoop] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.suppression = suppression
        self.monitor = monitor
        self.clock = clock

    async def record_dismissal(
        self,
        dismissal_type: DismissalType,
        detected_weather: Weather,
        active_app: Optional[str] = None,
        deviation: float = 0.0,
        suggested_practice_id: Optional[str] = None,
        signals: Iterable[str] = (),
        at: Optional[datetime] = None,
    ) -> DismissalEvent:
        """
        Record a declined nudge. The ledger is updated even if the store write
        fails; StoreIOFailure is then raised to the caller.
        """
        at = at or self.clock()
        event = DismissalEvent(
            timestamp=at,
            detected_weather=detected_weather,
            dismissal_type=dismissal_type,
            active_app=active_app,
            deviation=deviation,
            suggested_practice_id=suggested_practice_id,
            signals=list(signals),
        )

        if self.suppression is not None:
            self.suppression.record_dismissal(at)
        if self.monitor is not None:
            self.monitor.notify_dismissal(at)
            self.monitor.request_refresh()

        logger.info("Nudge dismissed (%s) during %s weather", dismissal_type.value, detected_weather.value)
        return await self.store.add_dismissal(event)

    async def dismiss_outcome(self, outcome: CycleOutcome, dismissal_type: DismissalType) -> DismissalEvent:
        """Record the dismissal of the nudge a cycle produced."""
        if outcome.nudge is None or outcome.weather is None:
            raise ValueError("Cycle did not produce a nudge")
        entry = outcome.entry
        return await self.record_dismissal(
            dismissal_type,
            outcome.weather,
            active_app=entry.active_app if entry else None,
            deviation=outcome.deviation,
            suggested_practice_id=outcome.nudge.practice_id,
            signals=outcome.classification.signals if outcome.classification else (),
        )

    async def start_practice(
        self,
        practice_id: str,
        weather_before: Weather,
        at: Optional[datetime] = None,
    ) -> PracticeSession:
        """Open a practice session. Raises ValueError for an unknown practice."""
        if get_practice(practice_id) is None:
            raise ValueError(f"Unknown practice: {practice_id}")
        session = PracticeSession(
            practice_id=practice_id,
            started_at=at or self.clock(),
            weather_before=weather_before,
        )
        return await self.store.add_practice_session(session)

    async def complete_practice(
        self,
        session_id: int,
        weather_after: Optional[Weather],
        what_helped: Optional[str] = None,
        completed: bool = True,
        at: Optional[datetime] = None,
    ) -> PracticeOutcome:
        """
        Close a practice session with its outcome.

        Raises KeyError for an unknown session and SessionAlreadyClosed when the
        outcome was already recorded.
        """
        at = at or self.clock()
        session = await self.store.close_practice_session(
            session_id,
            weather_after=weather_after,
            was_completed=completed,
            what_helped=what_helped,
            ended_at=at,
        )

        if completed:
            if self.suppression is not None:
                self.suppression.record_practice_completed(at)
            if self.monitor is not None:
                self.monitor.notify_practice_completed(at)
        if self.monitor is not None:
            self.monitor.request_refresh()

        logger.info(
            "Practice %s %s (%s -> %s)",
            session.practice_id,
            "completed" if completed else "abandoned",
            session.weather_before.value,
            session.weather_after.value if session.weather_after else "?",
        )

        alternative = suggest_alternative(session)
        if alternative is not None:
            logger.info("%s did not help, suggesting %s", session.practice_id, alternative.id)
        return PracticeOutcome(session, alternative)
