"""
Velocity engine - windowed activity counts, z-scores and sentiment per key.

Each window size keeps time-aligned period counters: the open period is the
current count, closed periods form a bounded history whose running sum and
sum of squares give the rolling mean and standard deviation in O(1) per
sample. Samples never trigger a rescan of history.
"""

import copy
import math
from collections import deque
from datetime import datetime, timedelta

from loguru import logger

from radar.analysis.baseline import BaselineTracker
from radar.analysis.config import RadarConfig, window_label
from radar.analysis.types import (
    BaselineRecord,
    Deviation,
    SentimentShift,
    StreamSample,
    TimeSeriesKey,
    VelocityMetrics,
    WindowStats,
)
from radar.exceptions import StaleClock
from radar.utils import epoch, to_utc, utc_now

_EPSILON = 1e-12


class RollingWindow:
    """
    Period counters for one window size.

    `current` accumulates the open period; `history` holds the totals of the
    closed periods immediately before it (zero-filled across gaps), never
    reaching back past the first sample.
    """

    __slots__ = (
        "span_seconds",
        "history_size",
        "current_period",
        "current",
        "history",
        "total",
        "squares",
        "_pushes",
    )

    def __init__(self, span: timedelta, history_size: int):
        self.span_seconds = span.total_seconds()
        self.history_size = history_size
        self.current_period: int | None = None
        self.current = 0.0
        self.history: deque[float] = deque()
        self.total = 0.0
        self.squares = 0.0
        self._pushes = 0

    def fork(self) -> "RollingWindow":
        clone = copy.copy(self)
        clone.history = deque(self.history)
        return clone

    def period_of(self, ts: float) -> int:
        return int(ts // self.span_seconds)

    def add(self, ts: float, value: float) -> bool:
        """Add a sample. Returns False when it is older than the retained history."""
        period = self.period_of(ts)
        if self.current_period is None:
            self.current_period = period
        elif period > self.current_period:
            self.advance_to(period)

        if period == self.current_period:
            self.current += value
            return True

        offset = self.current_period - period
        if offset > len(self.history):
            return False
        index = len(self.history) - offset
        old = self.history[index]
        new = old + value
        self.history[index] = new
        self.total += value
        self.squares += new * new - old * old
        return True

    def advance_to(self, period: int) -> None:
        """Close the open period and zero-fill any skipped ones."""
        if self.current_period is None or period <= self.current_period:
            return
        gap = period - self.current_period
        self._push(self.current)
        for _ in range(min(gap - 1, self.history_size)):
            self._push(0.0)
        self.current_period = period
        self.current = 0.0

    def _push(self, value: float) -> None:
        if len(self.history) >= self.history_size:
            leaving = self.history.popleft()
            self.total -= leaving
            self.squares -= leaving * leaving
        self.history.append(value)
        self.total += value
        self.squares += value * value

        self._pushes += 1
        if self._pushes >= self.history_size:
            self._resync()

    def _resync(self) -> None:
        # Bound floating-point drift of the running sums
        self.total = sum(self.history)
        self.squares = sum(v * v for v in self.history)
        self._pushes = 0

    @property
    def previous(self) -> float | None:
        return self.history[-1] if self.history else None

    @property
    def periods(self) -> int:
        return len(self.history)

    def mean_std(self) -> tuple[float, float]:
        n = len(self.history)
        if n == 0:
            return 0.0, 0.0
        mean = self.total / n
        variance = max(self.squares / n - mean * mean, 0.0)
        return mean, math.sqrt(variance)

    def stats(
        self,
        label: str,
        min_periods: int,
        sigma: float,
        min_count: float,
    ) -> WindowStats:
        mean, std = self.mean_std()
        count = self.current

        if self.periods < min_periods:
            z = Deviation.insufficient()
        elif std <= _EPSILON:
            z = Deviation.no_signal()
        else:
            z = Deviation.score((count - mean) / std)

        anomalous = (
            self.periods >= min_periods
            and count >= min_count
            and count > mean + sigma * std
        )
        return WindowStats(
            window=label,
            count=count,
            rolling_mean=mean,
            rolling_std_dev=std,
            periods=self.periods,
            z_score=z,
            anomalous=anomalous,
        )


class KeyTrack:
    """Everything the engine keeps for one key."""

    def __init__(self, key: TimeSeriesKey, windows: list[timedelta], history_size: int):
        self.key = key
        self.mentions = {window_label(w): RollingWindow(w, history_size) for w in windows}
        self.sentiment = {window_label(w): RollingWindow(w, history_size) for w in windows}
        self.series: deque[StreamSample] = deque()
        self.last_value: float | None = None
        self.last_seen: datetime | None = None

    def fork(self) -> "KeyTrack":
        """Copy with its own counters; samples are immutable and shared."""
        clone = copy.copy(self)
        clone.mentions = {label: w.fork() for label, w in self.mentions.items()}
        clone.sentiment = {label: w.fork() for label, w in self.sentiment.items()}
        clone.series = deque(self.series)
        return clone

    def touch(self, ts: datetime) -> None:
        if self.last_seen is None or ts > self.last_seen:
            self.last_seen = ts


class VelocityEngine:
    """
    Tracks mention velocity, sentiment and baselines for every key.

    Usage:
        engine = VelocityEngine(config)
        metrics = engine.update(key, ts, 1.0)
        engine.advance(now)
        if engine.is_anomalous(key):
            shift = engine.sentiment_shift(key)
        engine.deviation_of(key)
    """

    def __init__(self, config: RadarConfig | None = None):
        self.config = config or RadarConfig()
        self._tracks: dict[TimeSeriesKey, KeyTrack] = {}
        self._clock: datetime | None = None
        self.baselines = BaselineTracker(
            interval=self.config.baseline_interval,
            short_days=self.config.baseline_short_days,
            long_days=self.config.baseline_long_days,
            min_periods=self.config.baseline_min_periods,
            primary=self.config.primary_baseline,
        )

        longest = max(self.config.velocity_windows)
        self._track_retention = max(
            longest * self.config.velocity_history_periods,
            timedelta(days=self.config.baseline_long_days),
        )
        self._series_retention = (
            self.config.correlation_window + self.config.correlation_lag_range
        )

    def fork(self) -> "VelocityEngine":
        clone = copy.copy(self)
        clone._tracks = {key: track.fork() for key, track in self._tracks.items()}
        clone.baselines = self.baselines.fork()
        return clone

    def _track(self, key: TimeSeriesKey) -> KeyTrack:
        track = self._tracks.get(key)
        if track is None:
            track = KeyTrack(
                key, self.config.velocity_windows, self.config.velocity_history_periods
            )
            self._tracks[key] = track
        return track

    def ensure_fresh(self, key: TimeSeriesKey | str, timestamp: datetime, now: datetime) -> None:
        """Raise StaleClock when a timestamp runs ahead of the tick clock."""
        skew = (to_utc(timestamp) - to_utc(now)).total_seconds()
        if skew > self.config.max_clock_skew.total_seconds():
            raise StaleClock(str(key), skew)

    def _add_activity(self, track: KeyTrack, ts: datetime, value: float) -> None:
        seconds = epoch(ts)
        late = False
        for window in track.mentions.values():
            if not window.add(seconds, value):
                late = True
        if late:
            logger.debug(f"[velocity] late sample for {track.key} at {ts.isoformat()}")
        self.baselines.record(track.key, ts, value)
        track.touch(ts)

    def update(self, key: TimeSeriesKey, timestamp: datetime, value: float = 1.0) -> VelocityMetrics:
        """Record activity for a key and return its refreshed metrics."""
        ts = to_utc(timestamp)
        track = self._track(key)
        self._add_activity(track, ts, value)
        if key.kind != "market-instrument":
            track.series.append(
                StreamSample(
                    stream_kind="news", instrument_id=str(key), timestamp=ts, value=value
                )
            )
        return self.metrics(key)

    def update_sentiment(self, key: TimeSeriesKey, timestamp: datetime, score: float) -> None:
        seconds = epoch(timestamp)
        for window in self._track(key).sentiment.values():
            window.add(seconds, score)

    def record_sample(self, sample: StreamSample) -> VelocityMetrics:
        """
        Record a market observation.

        Velocity for an instrument is the absolute move from its previous
        sample; the raw level is kept for correlation.
        """
        key = TimeSeriesKey(kind="market-instrument", identifier=sample.instrument_id)
        ts = to_utc(sample.timestamp)
        track = self._track(key)
        move = abs(sample.value - track.last_value) if track.last_value is not None else 0.0
        track.last_value = sample.value
        track.series.append(sample.model_copy(update={"timestamp": ts}))
        self._add_activity(track, ts, move)
        return self.metrics(key)

    def advance(self, now: datetime) -> list[TimeSeriesKey]:
        """
        Roll every window to `now`, trim series buffers, prune idle keys and
        give the baselines a chance to roll.

        Returns:
            Keys whose baseline record changed
        """
        now = to_utc(now)
        self._clock = now
        seconds = epoch(now)
        series_cutoff = now - self._series_retention
        track_cutoff = now - self._track_retention

        idle = []
        for key, track in self._tracks.items():
            for window in track.mentions.values():
                window.advance_to(window.period_of(seconds))
            for window in track.sentiment.values():
                window.advance_to(window.period_of(seconds))
            while track.series and to_utc(track.series[0].timestamp) < series_cutoff:
                track.series.popleft()
            if track.last_seen is not None and track.last_seen < track_cutoff:
                idle.append(key)

        for key in idle:
            del self._tracks[key]
        if idle:
            self.baselines.discard(idle)
            logger.info(f"[velocity] pruned {len(idle)} idle keys, {len(self._tracks)} tracked")

        return self.baselines.roll(now)

    def metrics(self, key: TimeSeriesKey) -> VelocityMetrics | None:
        track = self._tracks.get(key)
        if track is None:
            return None
        windows = {
            label: window.stats(
                label,
                self.config.velocity_min_periods,
                self.config.sigma_threshold,
                self.config.min_spike_count,
            )
            for label, window in track.mentions.items()
        }
        return VelocityMetrics(
            key=key,
            windows=windows,
            updated_at=self._clock or track.last_seen or utc_now(),
        )

    def is_anomalous(self, key: TimeSeriesKey) -> bool:
        metrics = self.metrics(key)
        return metrics.anomalous if metrics else False

    def anomalous_keys(self) -> list[TimeSeriesKey]:
        return [key for key in self._tracks if self.is_anomalous(key)]

    def sentiment_shift(self, key: TimeSeriesKey) -> SentimentShift | None:
        """
        Strongest sentiment change in a window that is also spiking on mentions.

        A shift is a sign flip between the previous and current period, or a
        change of at least the configured delta.
        """
        metrics = self.metrics(key)
        if metrics is None:
            return None

        track = self._tracks[key]
        best: SentimentShift | None = None
        for label in metrics.anomalous_windows:
            window = track.sentiment[label]
            current = window.current
            previous = window.previous or 0.0
            flipped = current * previous < 0
            if not flipped and abs(current - previous) < self.config.sentiment_delta:
                continue
            shift = SentimentShift(window=label, previous=previous, current=current)
            if best is None or abs(shift.delta) > abs(best.delta):
                best = shift
        return best

    def deviation_of(self, key: TimeSeriesKey, window: str | None = None) -> Deviation:
        """Baseline z-score of the latest period, or why there is none."""
        return self.baselines.deviation(key, window)

    def baseline_of(self, key: TimeSeriesKey) -> BaselineRecord | None:
        return self.baselines.record_of(key)

    def series(self, key: TimeSeriesKey) -> list[StreamSample]:
        track = self._tracks.get(key)
        return list(track.series) if track else []

    def active_series(self) -> dict[TimeSeriesKey, list[StreamSample]]:
        return {key: list(t.series) for key, t in self._tracks.items() if t.series}

    def keys(self) -> list[TimeSeriesKey]:
        return list(self._tracks)

    def __contains__(self, key: TimeSeriesKey) -> bool:
        return key in self._tracks
