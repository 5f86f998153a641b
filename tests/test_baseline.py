"""
Tests for the Baseline Tracker
==============================

Cold start, deviation scoring, snapshot immutability and persistence.
"""

import math

import pytest

from respiro.baseline import BaselineSnapshot, BaselineTracker, MetricStats
from respiro.records import BehaviorMetrics


def metrics(switches: float = 1.0, session: float = 600.0, focus: float = 0.8) -> BehaviorMetrics:
    return BehaviorMetrics(
        context_switches_per_minute=switches,
        session_duration=session,
        application_focus={"Code": focus, "Mail": 1 - focus},
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def warm_tracker():
    """A tracker that has seen five identical samples."""
    tracker = BaselineTracker(alpha=0.1, min_samples=5)
    for _ in range(5):
        tracker.observe(metrics())
    return tracker


# =============================================================================
# MetricStats Tests
# =============================================================================

class TestMetricStats:
    """Tests for the exponentially weighted statistics."""

    def test_first_value_sets_mean(self):
        """The first observation becomes the mean with zero variance."""
        stats = MetricStats().updated(4.0, alpha=0.1)
        assert stats.mean == 4.0
        assert stats.variance == 0.0
        assert stats.count == 1

    def test_mean_moves_toward_new_values(self):
        """Later observations pull the mean by alpha."""
        stats = MetricStats().updated(0.0, 0.1).updated(10.0, 0.1)
        assert stats.mean == pytest.approx(1.0)
        assert stats.variance > 0

    def test_round_trip(self):
        """to_dict/from_dict preserve the values."""
        stats = MetricStats(mean=1.5, variance=0.25, count=7)
        assert MetricStats.from_dict(stats.to_dict()) == stats


# =============================================================================
# BaselineTracker Tests
# =============================================================================

class TestBaselineTracker:
    """Tests for observe() and deviation()."""

    def test_cold_start_is_zero(self):
        """Fewer than min_samples observations yield zero deviation."""
        tracker = BaselineTracker(min_samples=5)
        for i in range(5):
            assert tracker.observe(metrics(switches=i * 10)) == 0.0
        assert tracker.is_warm

    def test_identical_sample_has_no_deviation(self, warm_tracker):
        """A sample equal to the baseline scores zero."""
        assert warm_tracker.observe(metrics()) == 0.0

    def test_switch_spike_scores_weighted_and_clamped(self, warm_tracker):
        """A switch-rate spike is clamped at the max score and weighted."""
        # |3 - 1| / 0.5 = 4 (the clamp), weighted 0.5
        assert warm_tracker.deviation(metrics(switches=3.0)) == pytest.approx(2.0)
        assert warm_tracker.deviation(metrics(switches=100.0)) == pytest.approx(2.0)

    def test_deviation_is_scored_before_folding_in(self, warm_tracker):
        """observe() scores against the old baseline, then updates it."""
        before = warm_tracker.deviation(metrics(switches=2.0))
        assert warm_tracker.observe(metrics(switches=2.0)) == pytest.approx(before)
        assert warm_tracker.deviation(metrics(switches=2.0)) < before

    def test_deviation_is_never_negative(self, warm_tracker):
        """Scores are non-negative for any sample."""
        for switches in (0.0, 0.5, 1.0, 5.0):
            for focus in (0.0, 0.5, 1.0):
                assert warm_tracker.observe(metrics(switches=switches, focus=focus)) >= 0.0

    def test_non_finite_values_are_ignored(self, warm_tracker):
        """NaN and infinity never raise and never poison the baseline."""
        before = warm_tracker.snapshot.get("switch_rate")
        deviation = warm_tracker.observe(metrics(switches=math.nan, session=math.inf))
        assert math.isfinite(deviation)
        assert warm_tracker.snapshot.get("switch_rate") == before

    def test_every_observation_counts(self, warm_tracker):
        """Each observe() adds a sample to the snapshot."""
        warm_tracker.observe(metrics())
        assert warm_tracker.snapshot.samples == 6

    def test_snapshot_is_replaced_not_mutated(self, warm_tracker):
        """A snapshot held by a reader stays unchanged after new observations."""
        held = warm_tracker.snapshot
        warm_tracker.observe(metrics(switches=4.0))
        assert held.samples == 5
        assert held.get("switch_rate").mean == 1.0
        assert warm_tracker.snapshot is not held
        with pytest.raises(TypeError):
            held.stats["switch_rate"] = MetricStats()

    def test_invalid_alpha_rejected(self):
        """alpha must be in (0, 1]."""
        with pytest.raises(ValueError):
            BaselineTracker(alpha=0.0)


# =============================================================================
# Persistence Tests
# =============================================================================

class TestBaselinePersistence:
    """Tests for saving and restoring the baseline."""

    def test_restored_tracker_scores_the_same(self, warm_tracker):
        """A tracker restored from to_dict() scores samples identically."""
        data = warm_tracker.snapshot.to_dict()
        restored = BaselineTracker(snapshot=BaselineSnapshot.from_dict(data))

        assert restored.is_warm
        assert restored.deviation(metrics(switches=2.0)) == pytest.approx(
            warm_tracker.deviation(metrics(switches=2.0))
        )

    def test_from_empty_data(self):
        """Missing data gives an empty snapshot."""
        assert BaselineSnapshot.from_dict(None).samples == 0
        assert BaselineSnapshot.from_dict({}).samples == 0
