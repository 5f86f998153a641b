"""
Learned Suppression Patterns
============================

Aggregates dismissal history into per-context buckets so the suppression model
can tell when the user reliably turns nudges down. A bucket is keyed by:

1. the app in focus
2. the hour of day
3. the detected weather

Each bucket counts dismissals and nudges actually shown, and remembers the
typical behavioral deviation at the time of dismissal. ``LearnedPatterns`` is
immutable; it is rebuilt from history whenever dismissal data changes and
never edited in place.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from respiro.records import DismissalEvent, DismissalType, StressEntry, Weather

UNKNOWN_APP = "unknown"


def normalize_app(app: Optional[str]) -> str:
    if not app or not app.strip():
        return UNKNOWN_APP
    return app.strip().lower()


@dataclass(frozen=True)
class BucketKey:
    """Context a nudge was dismissed in."""
    app: str
    hour: int
    weather: Weather

    @classmethod
    def of(cls, app: Optional[str], moment: datetime, weather: Weather) -> "BucketKey":
        return cls(app=normalize_app(app), hour=moment.hour, weather=weather)

    def describe(self) -> str:
        return f"{self.app} around {self.hour:02d}:00 while {self.weather.value}"


@dataclass(frozen=True)
class BucketStats:
    """Dismissal statistics for one bucket."""
    dismissals: int = 0
    shown: int = 0
    typical_deviation: float = 0.0

    @property
    def dismissal_rate(self) -> float:
        # Dismissals can outnumber recorded nudges when history was pruned
        denominator = max(self.shown, self.dismissals)
        if denominator == 0:
            return 0.0
        return self.dismissals / denominator

    def to_dict(self) -> dict:
        return {
            "dismissals": self.dismissals,
            "shown": self.shown,
            "dismissal_rate": round(self.dismissal_rate, 3),
            "typical_deviation": round(self.typical_deviation, 3),
        }


@dataclass(frozen=True)
class LearnedPatterns:
    """Immutable aggregate of dismissal history."""
    buckets: Mapping[BucketKey, BucketStats] = field(default_factory=lambda: MappingProxyType({}))
    built_at: Optional[datetime] = None
    source_count: int = 0
    summary: str = ""

    @classmethod
    def empty(cls) -> "LearnedPatterns":
        return cls()

    def lookup(self, app: Optional[str], moment: datetime, weather: Weather) -> Optional[BucketStats]:
        return self.buckets.get(BucketKey.of(app, moment, weather))

    def strongest(self, limit: int = 5) -> list[tuple[BucketKey, BucketStats]]:
        """Buckets ordered by dismissal count, then rate."""
        ranked = sorted(
            self.buckets.items(),
            key=lambda kv: (-kv[1].dismissals, -kv[1].dismissal_rate, kv[0].app, kv[0].hour, kv[0].weather.value),
        )
        return ranked[:limit]

    def __len__(self) -> int:
        return len(self.buckets)


def build_learned_patterns(
    dismissals: Iterable[DismissalEvent],
    entries: Iterable[StressEntry] = (),
    now: Optional[datetime] = None,
    window_days: int = 30,
) -> LearnedPatterns:
    """
    Build LearnedPatterns from dismissal history and the stress entries of
    cycles where a nudge was shown.
    """
    now = now or datetime.now()
    cutoff = now - timedelta(days=window_days)

    dismissal_counts: Counter = Counter()
    deviations: dict[BucketKey, list[float]] = defaultdict(list)
    recent_dismissals = [d for d in dismissals if d.timestamp >= cutoff]
    for event in recent_dismissals:
        key = BucketKey.of(event.active_app, event.timestamp, event.detected_weather)
        dismissal_counts[key] += 1
        deviations[key].append(max(event.deviation, 0.0))

    shown_counts: Counter = Counter()
    for entry in entries:
        if entry.timestamp < cutoff or entry.nudge_type is None:
            continue
        shown_counts[BucketKey.of(entry.active_app, entry.timestamp, entry.weather)] += 1

    buckets = {}
    for key, count in dismissal_counts.items():
        values = deviations[key]
        buckets[key] = BucketStats(
            dismissals=count,
            shown=shown_counts.get(key, 0),
            typical_deviation=sum(values) / len(values) if values else 0.0,
        )

    patterns = LearnedPatterns(
        buckets=MappingProxyType(buckets),
        built_at=now,
        source_count=len(recent_dismissals),
    )
    return replace(patterns, summary=summarize_patterns(patterns, recent_dismissals, now))


def summarize_patterns(
    patterns: LearnedPatterns,
    dismissals: Iterable[DismissalEvent],
    now: datetime,
    recent_days: int = 7,
) -> str:
    """
    Plain-text summary for the classifier prompt, e.g.:

        - Dismissed 5 of 5 nudges in mail around 14:00 while cloudy
        - Said "I'm fine" 4 times in the last 7 days
    """
    lines = []
    for key, stats in patterns.strongest():
        if stats.dismissals < 2:
            continue
        total = max(stats.shown, stats.dismissals)
        lines.append(f"- Dismissed {stats.dismissals} of {total} nudges in {key.describe()}")

    recent_cutoff = now - timedelta(days=recent_days)
    recent = [d for d in dismissals if d.timestamp >= recent_cutoff]
    im_fine = sum(1 for d in recent if d.dismissal_type == DismissalType.IM_FINE)
    if im_fine >= 2:
        lines.append(f"- Said \"I'm fine\" {im_fine} times in the last {recent_days} days")

    practice_counts = Counter(d.suggested_practice_id for d in recent if d.suggested_practice_id)
    for practice_id, count in practice_counts.most_common(2):
        if count >= 2:
            lines.append(f"- Declined {practice_id} {count} times recently")

    return "\n".join(lines)
