"""
Velocity Engine Tests
=====================

Windowed counts, rolling statistics and z-scores per key, including the
no-signal and insufficient-history states, market-instrument moves and
sentiment shifts.
"""

from datetime import datetime, timedelta, timezone

import pytest

from radar.analysis.config import RadarConfig
from radar.analysis.types import StreamSample, TimeSeriesKey
from radar.analysis.velocity import RollingWindow, VelocityEngine
from radar.exceptions import StaleClock


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def day0() -> datetime:
    """Midnight UTC, so daily windows start on it."""
    return datetime(2025, 1, 10, tzinfo=timezone.utc)


@pytest.fixture
def daily_engine() -> VelocityEngine:
    return VelocityEngine(
        RadarConfig(velocity_windows=["24h"], velocity_min_periods=3, min_spike_count=3)
    )


@pytest.fixture
def hourly_engine(hourly_config) -> VelocityEngine:
    return VelocityEngine(hourly_config)


@pytest.fixture
def key() -> TimeSeriesKey:
    return TimeSeriesKey(kind="event", identifier="evt-1")


def feed(engine, key, start, counts, span=timedelta(days=1), score=None):
    """Add `counts[i]` mentions in period i; returns the last metrics."""
    metrics = None
    for i, count in enumerate(counts):
        ts = start + i * span + timedelta(minutes=10)
        for _ in range(count):
            metrics = engine.update(key, ts, 1.0)
            if score is not None:
                engine.update_sentiment(key, ts, score[i])
    return metrics


# ============================================================================
# TEST: Z-SCORE
# ============================================================================

class TestZScore:

    def test_known_mean_and_std(self, daily_engine, key, day0):
        metrics = feed(daily_engine, key, day0, [8, 16, 8, 16, 24])
        window = metrics.windows["24h"]

        assert window.count == 24
        assert window.rolling_mean == 12.0
        assert window.rolling_std_dev == 4.0
        assert window.z_score.status == "score"
        assert window.z_score.value == 3.0
        assert window.anomalous is True
        assert metrics.anomalous_windows == ["24h"]
        assert metrics.peak_z == 3.0

    def test_flat_history_is_no_signal(self, daily_engine, key, day0):
        metrics = feed(daily_engine, key, day0, [5, 5, 5, 5])
        window = metrics.windows["24h"]

        assert window.rolling_std_dev == 0.0
        assert window.count == window.rolling_mean
        assert window.z_score.status == "no_signal"
        assert window.z_score.value is None
        assert window.anomalous is False

    def test_cold_start_is_insufficient_history(self, daily_engine, key, day0):
        metrics = feed(daily_engine, key, day0, [4, 9])
        window = metrics.windows["24h"]

        assert window.periods == 1
        assert window.z_score.status == "insufficient_history"
        assert window.anomalous is False

    def test_small_counts_do_not_spike(self, key, day0):
        engine = VelocityEngine(
            RadarConfig(velocity_windows=["24h"], velocity_min_periods=3, min_spike_count=3)
        )
        metrics = feed(engine, key, day0, [1, 0, 0, 2])

        assert metrics.windows["24h"].anomalous is False

    def test_gap_periods_count_as_zero(self, daily_engine, key, day0):
        feed(daily_engine, key, day0, [6])
        later = day0 + timedelta(days=3, minutes=10)
        metrics = daily_engine.update(key, later, 1.0)
        window = metrics.windows["24h"]

        assert window.periods == 3
        assert window.rolling_mean == pytest.approx(2.0)

    def test_late_sample_lands_in_its_period(self, hourly_engine, key, day0):
        feed(hourly_engine, key, day0, [1, 1, 1, 1], span=timedelta(hours=1))
        metrics = hourly_engine.update(key, day0 + timedelta(hours=1, minutes=20), 1.0)
        window = metrics.windows["1h"]

        assert window.count == 1
        assert window.rolling_mean == pytest.approx(4 / 3)


class TestRollingWindow:

    def test_history_is_bounded(self):
        window = RollingWindow(timedelta(hours=1), history_size=3)
        for hour in range(10):
            window.add(hour * 3600.0, float(hour))

        assert list(window.history) == [6.0, 7.0, 8.0]
        assert window.current == 9.0
        mean, _ = window.mean_std()
        assert mean == pytest.approx(7.0)

    def test_sample_older_than_history_is_rejected(self):
        window = RollingWindow(timedelta(hours=1), history_size=2)
        window.add(10 * 3600.0, 1.0)
        window.advance_to(12)

        assert window.add(3 * 3600.0, 1.0) is False


# ============================================================================
# TEST: MARKET INSTRUMENTS, CLOCK AND ADVANCE
# ============================================================================

class TestMarketAndClock:

    def test_market_velocity_is_absolute_move(self, hourly_engine, day0):
        samples = [
            StreamSample(
                stream_kind="prediction_market",
                instrument_id="pm-1",
                timestamp=day0 + timedelta(minutes=m),
                value=v,
            )
            for m, v in [(0, 0.40), (10, 0.48), (20, 0.45)]
        ]
        for sample in samples:
            metrics = hourly_engine.record_sample(sample)

        key = TimeSeriesKey(kind="market-instrument", identifier="pm-1")
        assert metrics.windows["1h"].count == pytest.approx(0.11)
        assert [s.value for s in hourly_engine.series(key)] == [0.40, 0.48, 0.45]

    def test_news_keys_keep_count_series(self, hourly_engine, key, day0):
        hourly_engine.update(key, day0, 1.0)

        (sample,) = hourly_engine.series(key)
        assert sample.stream_kind == "news"
        assert sample.instrument_id == str(key)

    def test_future_timestamp_is_stale(self, hourly_engine, key, day0):
        with pytest.raises(StaleClock) as exc:
            hourly_engine.ensure_fresh(key, day0 + timedelta(minutes=30), now=day0)
        assert exc.value.key == str(key)

    def test_past_timestamp_is_fresh(self, hourly_engine, key, day0):
        hourly_engine.ensure_fresh(key, day0 - timedelta(days=2), now=day0)

    def test_advance_closes_open_periods(self, hourly_engine, key, day0):
        feed(hourly_engine, key, day0, [2], span=timedelta(hours=1))
        hourly_engine.advance(day0 + timedelta(hours=3, minutes=5))
        window = hourly_engine.metrics(key).windows["1h"]

        assert window.count == 0
        assert window.periods == 3

    def test_idle_keys_are_pruned(self, key, day0):
        engine = VelocityEngine(RadarConfig(velocity_windows=["1h"], baseline_long_days=1))
        engine.update(key, day0, 1.0)
        engine.advance(day0 + timedelta(days=3))

        assert key not in engine
        assert engine.baseline_of(key) is None

    def test_fork_is_independent(self, hourly_engine, key, day0):
        hourly_engine.update(key, day0, 1.0)
        fork = hourly_engine.fork()
        fork.update(key, day0, 1.0)

        assert hourly_engine.metrics(key).windows["1h"].count == 1
        assert fork.metrics(key).windows["1h"].count == 2


# ============================================================================
# TEST: SENTIMENT SHIFT
# ============================================================================

class TestSentimentShift:

    def test_sign_flip_during_spike(self, hourly_engine, key, day0):
        feed(
            hourly_engine,
            key,
            day0,
            [1, 1, 1, 5],
            span=timedelta(hours=1),
            score=[-1.0, -1.0, -1.0, 1.0],
        )

        assert hourly_engine.is_anomalous(key)
        shift = hourly_engine.sentiment_shift(key)
        assert shift is not None
        assert shift.window == "1h"
        assert shift.previous == -1.0
        assert shift.current == 5.0
        assert shift.delta == 6.0

    def test_no_shift_without_spike(self, hourly_engine, key, day0):
        feed(
            hourly_engine,
            key,
            day0,
            [1, 1, 1, 1],
            span=timedelta(hours=1),
            score=[-1.0, -1.0, -1.0, 3.0],
        )

        assert hourly_engine.sentiment_shift(key) is None

    def test_unchanged_sentiment_is_not_a_shift(self, hourly_engine, key, day0):
        feed(
            hourly_engine,
            key,
            day0,
            [1, 1, 1, 5],
            span=timedelta(hours=1),
            score=[0.2, 0.2, 0.2, 0.2],
        )

        assert hourly_engine.is_anomalous(key)
        # 5 x 0.2 = 1.0 against 0.2: below the configured delta
        assert hourly_engine.sentiment_shift(key) is None
