"""
Preference Ranker
=================

Orders practice ids by how well they have worked for this user.

Score per practice:

    0.5 * completion_rate + 0.5 * (avg_improvement + 2) / 4

where improvement is the ordinal weather drop over a session (stormy -> clear
is +2, clear -> stormy is -2). Practices with fewer than ``min_samples``
sessions get the neutral prior (0.5) so new practices are not starved. Ties go
to the most recently used practice, then to the id.

Ranking is a pure function of the session history.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from respiro.records import PracticeSession

NEUTRAL_PRIOR = 0.5
MAX_IMPROVEMENT = 2  # stormy -> clear


@dataclass(frozen=True)
class PracticeScore:
    """Aggregated outcome statistics for one practice."""
    practice_id: str
    sessions: int
    completion_rate: float
    avg_improvement: float
    score: float
    last_used: Optional[datetime] = None
    has_enough_samples: bool = False

    def to_dict(self) -> dict:
        return {
            "practice_id": self.practice_id,
            "sessions": self.sessions,
            "completion_rate": round(self.completion_rate, 3),
            "avg_improvement": round(self.avg_improvement, 3),
            "score": round(self.score, 3),
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }


class PreferenceRanker:
    """Ranks practices by completion rate and weather improvement."""

    def __init__(self, min_samples: int = 3, completion_weight: float = 0.5, prior: float = NEUTRAL_PRIOR):
        if not 0 <= completion_weight <= 1:
            raise ValueError("completion_weight must be between 0 and 1")
        self.min_samples = min_samples
        self.completion_weight = completion_weight
        self.prior = prior

    def scores(
        self,
        sessions: Iterable[PracticeSession],
        candidates: Iterable[str] = (),
    ) -> list[PracticeScore]:
        """Per-practice statistics, best first."""
        grouped: dict[str, list[PracticeSession]] = {}
        for session in sessions:
            grouped.setdefault(session.practice_id, []).append(session)
        for practice_id in candidates:
            grouped.setdefault(practice_id, [])

        scored = [self._score(pid, group) for pid, group in grouped.items()]

        # Stable multi-pass sort: id, then recency, then score
        scored.sort(key=lambda s: s.practice_id)
        scored.sort(key=lambda s: s.last_used or datetime.min, reverse=True)
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored

    def rank(self, sessions: Iterable[PracticeSession], candidates: Iterable[str] = ()) -> list[str]:
        """Practice ids ordered by empirical effectiveness."""
        return [s.practice_id for s in self.scores(sessions, candidates)]

    def _score(self, practice_id: str, sessions: Sequence[PracticeSession]) -> PracticeScore:
        count = len(sessions)
        last_used = max((s.started_at for s in sessions), default=None)
        if count == 0:
            return PracticeScore(practice_id, 0, 0.0, 0.0, self.prior, last_used)

        completion_rate = sum(1 for s in sessions if s.was_completed) / count
        improvements = [s.improvement for s in sessions if s.improvement is not None]
        avg_improvement = sum(improvements) / len(improvements) if improvements else 0.0

        enough = count >= self.min_samples
        if enough:
            normalized = (avg_improvement + MAX_IMPROVEMENT) / (2 * MAX_IMPROVEMENT)
            score = self.completion_weight * completion_rate + (1 - self.completion_weight) * normalized
        else:
            score = self.prior

        return PracticeScore(
            practice_id=practice_id,
            sessions=count,
            completion_rate=completion_rate,
            avg_improvement=avg_improvement,
            score=score,
            last_used=last_used,
            has_enough_samples=enough,
        )


def ranked_practices_json(scores: Sequence[PracticeScore], limit: int = 5) -> str:
    """Top practices as JSON for the classifier prompt."""
    return json.dumps([s.to_dict() for s in scores[:limit]])
