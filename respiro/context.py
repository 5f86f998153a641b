"""
Learning Refresher
==================

Rebuilds everything the engine learns from history, as immutable values:

- LearnedPatterns from dismissals (+ entries where a nudge was shown)
- the preference ranking of practices
- the ToolContext handed to the classifier
- the raw history the suppression model rebuilds its cooldown ledger from
- the saved preferences (when the refresher is given defaults)

Store read failures are treated as empty history (cold start).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence

from respiro.errors import StoreIOFailure
from respiro.patterns import LearnedPatterns, build_learned_patterns
from respiro.practices import practice_ids
from respiro.ranking import PracticeScore, PreferenceRanker, ranked_practices_json
from respiro.records import PracticeSession, StressEntry, ToolContext, UserPreferences
from respiro.store import EventStore, read_or_empty

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LearningBundle:
    """Result of one refresh."""
    patterns: LearnedPatterns
    scores: tuple = ()
    tool_context: ToolContext = field(default_factory=ToolContext)
    entries: tuple = ()
    dismissals: tuple = ()
    sessions: tuple = ()
    preferences: Optional[UserPreferences] = None

    @property
    def preferred_practices(self) -> tuple:
        return tuple(s.practice_id for s in self.scores)


def build_tool_context(
    sessions: Sequence[PracticeSession],
    entries: Sequence[StressEntry],
    preferred_practices: Iterable[str],
    patterns: Optional[LearnedPatterns] = None,
    scores: Sequence[PracticeScore] = (),
) -> ToolContext:
    """Bundle recent history for the classifier (newest entries last)."""
    tried = [s for s in scores if s.sessions]
    return ToolContext(
        practice_history=tuple(s.to_dict() for s in list(sessions)[-ToolContext.MAX_PRACTICE_HISTORY:]),
        weather_history=tuple(e.to_history_dict() for e in list(entries)[-ToolContext.MAX_WEATHER_HISTORY:]),
        preferred_practices=tuple(preferred_practices),
        learned_patterns=patterns.summary if patterns else "",
        practice_ranking=ranked_practices_json(tried) if tried else "",
    )


class LearningRefresher:
    """Reads history from the store and rebuilds the learned state."""

    def __init__(
        self,
        store: EventStore,
        ranker: Optional[PreferenceRanker] = None,
        window_days: int = 30,
        clock: Callable[[], datetime] = datetime.now,
        defaults: Optional[UserPreferences] = None,
    ):
        self.store = store
        self.ranker = ranker or PreferenceRanker()
        self.window_days = window_days
        self.clock = clock
        self.defaults = defaults

    async def rebuild(self, pinned_practices: Sequence[str] = ()) -> LearningBundle:
        """
        Rebuild patterns, ranking and tool context.

        ``pinned_practices`` (the user's explicit favourites) are placed ahead
        of the learned ranking. When preferences are read, their favourites
        replace ``pinned_practices``.
        """
        now = self.clock()
        since = now - timedelta(days=self.window_days)

        dismissals = await read_or_empty(self.store.fetch_dismissals(since=since), "dismissals")
        entries = await read_or_empty(self.store.fetch_stress_entries(since=since), "stress entries")
        sessions = await read_or_empty(self.store.fetch_practice_sessions(since=since), "practice sessions")
        preferences = await self._read_preferences()
        if preferences is not None:
            pinned_practices = preferences.preferred_practice_ids

        patterns = build_learned_patterns(dismissals, entries, now=now, window_days=self.window_days)
        scores = self.ranker.scores(sessions, candidates=practice_ids())
        preferred = _pin(pinned_practices, [s.practice_id for s in scores])

        logger.debug(
            "Rebuilt learning: %d dismissal buckets, %d practices ranked, %d entries",
            len(patterns), len(scores), len(entries),
        )
        return LearningBundle(
            patterns=patterns,
            scores=tuple(scores),
            tool_context=build_tool_context(sessions, entries, preferred, patterns, scores),
            entries=tuple(entries),
            dismissals=tuple(dismissals),
            sessions=tuple(sessions),
            preferences=preferences,
        )

    async def _read_preferences(self) -> Optional[UserPreferences]:
        if self.defaults is None:
            return None
        try:
            return await self.store.load_preferences(self.defaults)
        except StoreIOFailure as e:
            logger.warning("Could not read preferences: %s", e)
            return None


def _pin(pinned: Sequence[str], ranked: Sequence[str]) -> list[str]:
    seen = set()
    ordered = []
    for practice_id in list(pinned) + list(ranked):
        if practice_id not in seen:
            seen.add(practice_id)
            ordered.append(practice_id)
    return ordered
