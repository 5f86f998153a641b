"""
Baseline Tracker
================

Keeps a rolling, exponentially weighted baseline of the user's behavioral
metrics and scores how far the current sample deviates from it.

Tracked metrics:
- context switches per minute
- session duration
- max focus fraction (how concentrated attention is on one app)

For each metric the deviation is ``|x - mean| / max(std, scale)``, clamped to
``[0, max_score]``; the per-metric scores are combined with fixed weights. The
score is computed against the baseline *before* the sample folds in, and every
sample folds in, whether or not a nudge is later shown.

Usage:
    tracker = BaselineTracker()
    deviation = tracker.observe(sample.metrics)
    snapshot = tracker.snapshot   # immutable
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from respiro.records import BehaviorMetrics


# Relative importance of each metric in the combined score
METRIC_WEIGHTS = {
    "switch_rate": 0.5,
    "session_duration": 0.2,
    "max_focus": 0.3,
}

# Smallest spread assumed per metric, so a very steady baseline does not turn
# tiny wobbles into huge scores
METRIC_SCALES = {
    "switch_rate": 0.5,         # switches / minute
    "session_duration": 600.0,  # seconds
    "max_focus": 0.05,          # fraction
}


def _extract(metrics: BehaviorMetrics) -> dict[str, float]:
    return {
        "switch_rate": metrics.context_switches_per_minute,
        "session_duration": metrics.session_duration,
        "max_focus": metrics.max_focus,
    }


@dataclass(frozen=True)
class MetricStats:
    """Running mean/variance for one metric."""
    mean: float = 0.0
    variance: float = 0.0
    count: int = 0

    @property
    def std(self) -> float:
        return math.sqrt(max(self.variance, 0.0))

    def updated(self, value: float, alpha: float) -> "MetricStats":
        if self.count == 0:
            return MetricStats(mean=value, variance=0.0, count=1)
        delta = value - self.mean
        mean = self.mean + alpha * delta
        variance = (1 - alpha) * (self.variance + alpha * delta * delta)
        return MetricStats(mean=mean, variance=variance, count=self.count + 1)

    def to_dict(self) -> dict:
        return {"mean": self.mean, "variance": self.variance, "count": self.count}

    @classmethod
    def from_dict(cls, data: dict) -> "MetricStats":
        return cls(
            mean=float(data.get("mean", 0.0)),
            variance=float(data.get("variance", 0.0)),
            count=int(data.get("count", 0)),
        )


@dataclass(frozen=True)
class BaselineSnapshot:
    """Immutable view of the baseline, safe to hand to other components."""
    stats: Mapping[str, MetricStats] = field(default_factory=lambda: MappingProxyType({}))
    samples: int = 0

    def get(self, metric: str) -> MetricStats:
        return self.stats.get(metric, MetricStats())

    def to_dict(self) -> dict:
        return {
            "samples": self.samples,
            "stats": {name: s.to_dict() for name, s in self.stats.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BaselineSnapshot":
        if not data:
            return cls()
        stats = {
            name: MetricStats.from_dict(values)
            for name, values in (data.get("stats") or {}).items()
            if name in METRIC_WEIGHTS
        }
        return cls(stats=MappingProxyType(stats), samples=int(data.get("samples", 0)))


class BaselineTracker:
    """
    Online behavioral baseline.

    ``observe`` never raises. Until ``min_samples`` observations have been
    folded in, the deviation is 0 (cold start).
    """

    def __init__(
        self,
        alpha: float = 0.1,
        min_samples: int = 5,
        max_score: float = 4.0,
        snapshot: Optional[BaselineSnapshot] = None,
    ):
        if not 0 < alpha <= 1:
            raise ValueError("alpha must be in (0, 1]")
        self.alpha = alpha
        self.min_samples = min_samples
        self.max_score = max_score
        self._snapshot = snapshot or BaselineSnapshot()

    @property
    def snapshot(self) -> BaselineSnapshot:
        return self._snapshot

    @property
    def is_warm(self) -> bool:
        return self._snapshot.samples >= self.min_samples

    def deviation(self, metrics: BehaviorMetrics) -> float:
        """Score ``metrics`` against the current baseline without updating it."""
        if not self.is_warm:
            return 0.0

        total = 0.0
        for name, value in _extract(metrics).items():
            if not math.isfinite(value):
                continue
            stats = self._snapshot.get(name)
            if stats.count == 0:
                continue
            spread = max(stats.std, METRIC_SCALES[name])
            score = min(abs(value - stats.mean) / spread, self.max_score)
            total += METRIC_WEIGHTS[name] * score
        return max(total, 0.0)

    def observe(self, metrics: BehaviorMetrics) -> float:
        """Return the deviation of ``metrics`` and fold the sample into the baseline."""
        deviation = self.deviation(metrics)

        stats = dict(self._snapshot.stats)
        for name, value in _extract(metrics).items():
            if math.isfinite(value):
                stats[name] = stats.get(name, MetricStats()).updated(value, self.alpha)

        # Swap in a new snapshot; readers holding the old one are unaffected
        self._snapshot = BaselineSnapshot(
            stats=MappingProxyType(stats),
            samples=self._snapshot.samples + 1,
        )
        return deviation
