"""
Baseline tracker tests: cold start, roll cadence, 7d/30d deviation.
"""

from datetime import timedelta

import pytest

from radar.analysis.baseline import BaselineTracker
from radar.analysis.types import TimeSeriesKey


@pytest.fixture
def tracker() -> BaselineTracker:
    # 24 hourly periods short, 48 long, numeric after 4 closed periods
    return BaselineTracker(
        interval=timedelta(hours=1), short_days=1, long_days=2, min_periods=4
    )


@pytest.fixture
def key() -> TimeSeriesKey:
    return TimeSeriesKey(kind="hotspot", identifier="MENA")


def record_hours(tracker, key, start, values):
    for hour, value in enumerate(values):
        tracker.record(key, start + timedelta(hours=hour, minutes=10), value)


class TestColdStart:

    def test_first_period_is_insufficient(self, tracker, key, t0):
        tracker.record(key, t0, 1.0)
        tracker.roll(t0 + timedelta(hours=1, minutes=1))

        record = tracker.record_of(key)
        assert record.periods == 0
        assert record.low_confidence is True
        assert tracker.deviation(key).status == "insufficient_history"

    def test_unknown_key_is_insufficient(self, tracker):
        unknown = TimeSeriesKey(kind="event", identifier="nope")
        assert tracker.deviation(unknown).status == "insufficient_history"

    def test_history_starts_at_first_sample(self, tracker, key, t0):
        tracker.record(key, t0 + timedelta(minutes=5), 1.0)
        tracker.roll(t0 + timedelta(hours=3, minutes=1))

        record = tracker.record_of(key)
        assert record.periods == 2
        assert record.current_value == 0.0
        assert record.seven_day_mean == pytest.approx(0.5)


class TestDeviation:

    def test_z_score_against_short_window(self, tracker, key, t0):
        record_hours(tracker, key, t0, [1, 3, 1, 3, 5])
        changed = tracker.roll(t0 + timedelta(hours=5, minutes=1))

        assert changed == [key]
        record = tracker.record_of(key)
        assert record.seven_day_mean == pytest.approx(2.0)
        assert record.seven_day_std_dev == pytest.approx(1.0)
        assert record.current_value == 5.0

        deviation = tracker.deviation(key)
        assert deviation.status == "score"
        assert deviation.value == pytest.approx(3.0)
        assert deviation.exceeds(2.0)

    def test_long_window_selectable(self, tracker, key, t0):
        record_hours(tracker, key, t0, [1, 3, 1, 3, 5])
        tracker.roll(t0 + timedelta(hours=5, minutes=1))

        assert tracker.deviation(key, "30d").value == pytest.approx(3.0)

    def test_flat_history_is_no_signal(self, tracker, key, t0):
        record_hours(tracker, key, t0, [2, 2, 2, 2, 2])
        tracker.roll(t0 + timedelta(hours=5, minutes=1))

        assert tracker.deviation(key).status == "no_signal"

    def test_short_and_long_windows_diverge(self, key, t0):
        tracker = BaselineTracker(
            interval=timedelta(hours=1), short_days=1, long_days=2, min_periods=4
        )
        # 24 quiet hours then 24 busy hours, then the current hour
        record_hours(tracker, key, t0, [1] * 24 + [5] * 24 + [5])
        tracker.roll(t0 + timedelta(hours=49, minutes=1))

        record = tracker.record_of(key)
        assert record.seven_day_mean == pytest.approx(5.0)
        assert record.thirty_day_mean == pytest.approx(3.0)
        assert record.low_confidence is False


class TestCadence:

    def test_roll_at_most_once_per_interval(self, tracker, key, t0):
        tracker.record(key, t0, 1.0)
        assert tracker.roll(t0 + timedelta(hours=1)) == [key]

        tracker.record(key, t0 + timedelta(hours=1, minutes=10), 1.0)
        assert tracker.roll(t0 + timedelta(hours=2, minutes=30)) == [key]
        assert tracker.due(t0 + timedelta(hours=2, minutes=45)) is False
        assert tracker.roll(t0 + timedelta(hours=3, minutes=5)) == []

    def test_forced_roll(self, tracker, key, t0):
        tracker.record(key, t0, 1.0)
        tracker.roll(t0 + timedelta(hours=1))

        assert tracker.roll(t0 + timedelta(hours=2), force=True) == [key]

    def test_closed_period_rejects_samples(self, tracker, key, t0):
        tracker.record(key, t0, 1.0)
        tracker.roll(t0 + timedelta(hours=2))

        assert tracker.record(key, t0 + timedelta(minutes=30), 1.0) is False


class TestPersistence:

    def test_export_import_keeps_deviation(self, tracker, key, t0):
        record_hours(tracker, key, t0, [1, 3, 1, 3, 5])
        tracker.roll(t0 + timedelta(hours=5, minutes=1))

        restored = BaselineTracker(
            interval=timedelta(hours=1), short_days=1, long_days=2, min_periods=4
        )
        restored.import_state(key, tracker.export_state(key))

        assert restored.deviation(key).value == pytest.approx(3.0)
        restored.record(key, t0 + timedelta(hours=5, minutes=10), 2.0)
        restored.roll(t0 + timedelta(hours=6, minutes=1))
        assert restored.record_of(key).periods == 5

    def test_discard(self, tracker, key, t0):
        tracker.record(key, t0, 1.0)

        assert tracker.discard([key]) == 1
        assert tracker.keys() == []


class TestPruning:

    def test_idle_key_dropped_after_long_window(self, tracker, key, t0):
        busy = TimeSeriesKey(kind="hotspot", identifier="Sahel")
        tracker.record(key, t0, 1.0)
        tracker.record(busy, t0 + timedelta(hours=45), 1.0)

        tracker.roll(t0 + timedelta(hours=48, minutes=30))
        assert set(tracker.keys()) == {key, busy}

        tracker.roll(t0 + timedelta(hours=50, minutes=30))
        assert tracker.keys() == [busy]

    def test_imported_state_is_pruned_by_its_own_activity(self, tracker, key, t0):
        record_hours(tracker, key, t0, [1, 3, 1, 3, 5])
        tracker.roll(t0 + timedelta(hours=5, minutes=1))

        restored = BaselineTracker(
            interval=timedelta(hours=1), short_days=1, long_days=2, min_periods=4
        )
        restored.import_state(key, tracker.export_state(key))
        restored.roll(t0 + timedelta(hours=40))
        assert restored.keys() == [key]

        restored.roll(t0 + timedelta(hours=60))
        assert restored.keys() == []

    def test_fork_leaves_original_untouched(self, tracker, key, t0):
        record_hours(tracker, key, t0, [1, 3, 1, 3, 5])
        tracker.roll(t0 + timedelta(hours=5, minutes=1))

        fork = tracker.fork()
        fork.record(key, t0 + timedelta(hours=5, minutes=10), 9.0)
        fork.roll(t0 + timedelta(hours=6, minutes=1))

        assert fork.record_of(key).current_value == 9.0
        assert tracker.record_of(key).current_value == 5.0
        assert tracker.record_of(key).periods == 4
