"""
Correlation engine - lead/lag and divergence detection across streams.

Detects:
- Lead/lag relationships (sliding cross-correlation over a bounded lag range)
- Coincident moves (correlation peak at lag zero)
- Silent divergence (one stream spikes, the other stays quiet)

Both series are resampled onto a common grid and z-scored before comparison,
so probability points, prices and mention counts are comparable.
"""

import copy
from datetime import datetime, timedelta

import numpy as np
from loguru import logger

from radar.analysis.config import RadarConfig
from radar.analysis.types import CorrelationSignal, StreamSample, TimeSeriesKey
from radar.exceptions import InsufficientHistory
from radar.utils import epoch, to_utc, utc_now

# Fewest observations a stream needs before it can be compared
MIN_COUNT_SAMPLES = 3
MIN_LEVEL_SAMPLES = 2


def _zscore(series: np.ndarray) -> np.ndarray | None:
    std = float(series.std())
    if std <= 1e-12:
        return None
    return (series - series.mean()) / std


class CorrelationEngine:
    """
    Finds lead/lag anomalies between market instruments and news-derived keys.

    Usage:
        engine = CorrelationEngine(config)
        signals = engine.detect(market_samples, news_samples, timedelta(hours=48))
        signals = engine.evaluate(velocity.active_series(), now)
    """

    def __init__(self, config: RadarConfig | None = None):
        self.config = config or RadarConfig()
        # {pair_id: (fingerprint_a, fingerprint_b)} from the last evaluation
        self._fingerprints: dict[str, tuple[tuple, tuple]] = {}
        self._cached: dict[str, list[CorrelationSignal]] = {}

    def fork(self) -> "CorrelationEngine":
        clone = copy.copy(self)
        clone._fingerprints = dict(self._fingerprints)
        clone._cached = {k: list(v) for k, v in self._cached.items()}
        return clone

    @property
    def _resolution_s(self) -> float:
        return self.config.correlation_resolution.total_seconds()

    @property
    def _max_lag_steps(self) -> int:
        return max(0, int(self.config.correlation_lag_range / self.config.correlation_resolution))

    def _resample(
        self, samples: list[StreamSample], start: float, bins: int
    ) -> tuple[np.ndarray, int]:
        """
        Counts are summed per bin; levels are carried forward and differenced.

        Returns the series and the number of samples that fell in the window.
        A stream with nothing in the window resamples to a flat series.
        """
        resolution = self._resolution_s
        is_count = all(s.stream_kind == "news" for s in samples)

        points = []
        for s in samples:
            index = int((epoch(s.timestamp) - start) // resolution)
            if 0 <= index < bins:
                points.append((epoch(s.timestamp), index, s.value))
            elif index == bins:
                points.append((epoch(s.timestamp), bins - 1, s.value))

        points.sort()
        if is_count or not points:
            series = np.zeros(bins)
            for _, index, value in points:
                series[index] += value
            return series, len(points)

        levels = np.full(bins, np.nan)
        for _, index, value in points:
            levels[index] = value
        # Carry the first level backwards and every level forwards
        first = next(i for i in range(bins) if not np.isnan(levels[i]))
        levels[:first] = levels[first]
        for i in range(first + 1, bins):
            if np.isnan(levels[i]):
                levels[i] = levels[i - 1]
        return np.concatenate(([0.0], np.diff(levels))), len(points)

    @staticmethod
    def _require_history(samples: list[StreamSample], observed: int, name: str) -> None:
        is_count = all(s.stream_kind == "news" for s in samples)
        minimum = MIN_COUNT_SAMPLES if is_count else MIN_LEVEL_SAMPLES
        if observed < minimum:
            raise InsufficientHistory(f"{name}: {observed} samples in window")

    def _has_history(
        self, samples: list[StreamSample], observed: int, name: str, other: str
    ) -> bool:
        try:
            self._require_history(samples, observed, name)
        except InsufficientHistory as e:
            logger.debug(f"[correlation] {name} vs {other}: {e}")
            return False
        return True

    def _best_lag(self, za: np.ndarray, zb: np.ndarray) -> tuple[int, float]:
        """Lag (in bins, positive = b follows a) with the largest |r|."""
        n = len(za)
        min_overlap = max(4, n // 4)
        best_lag, best_r = 0, 0.0
        for lag in range(-self._max_lag_steps, self._max_lag_steps + 1):
            if lag >= 0:
                x, y = za[: n - lag], zb[lag:]
            else:
                x, y = za[-lag:], zb[: n + lag]
            if len(x) < min_overlap or x.std() <= 1e-12 or y.std() <= 1e-12:
                continue
            r = float(np.corrcoef(x, y)[0, 1])
            if np.isnan(r):
                continue
            if abs(r) > abs(best_r) + 1e-9 or (
                abs(abs(r) - abs(best_r)) <= 1e-9 and abs(lag) < abs(best_lag)
            ):
                best_lag, best_r = lag, r
        return best_lag, best_r

    def _divergence(
        self,
        moving: np.ndarray,
        other: np.ndarray | None,
        name_moving: str,
        name_other: str,
        detected_at: datetime,
    ) -> CorrelationSignal | None:
        """Recent spike in `moving` with no comparable move in `other`."""
        lag_steps = self._max_lag_steps
        n = len(moving)
        recent_start = max(0, n - lag_steps - 1)
        spikes = [
            i
            for i in range(recent_start, n)
            if abs(moving[i]) >= self.config.divergence_sigma
        ]
        if not spikes:
            return None

        spike = max(spikes, key=lambda i: abs(moving[i]))
        lo = max(0, spike - lag_steps)
        peak_other = 0.0 if other is None else float(np.abs(other[lo:]).max())
        if peak_other >= self.config.divergence_quiet_sigma:
            return None

        magnitude = abs(float(moving[spike]))
        return CorrelationSignal(
            stream_a=name_moving,
            stream_b=name_other,
            lag_estimate=timedelta(0),
            strength=round(1.0 - peak_other / magnitude, 4),
            correlation=0.0,
            pattern="diverges",
            detected_at=detected_at,
        )

    def detect(
        self,
        stream_a: list[StreamSample],
        stream_b: list[StreamSample],
        window: timedelta | None = None,
        now: datetime | None = None,
        name_a: str | None = None,
        name_b: str | None = None,
    ) -> list[CorrelationSignal]:
        """
        Compare two streams over `window` ending at `now`.

        Args:
            stream_a: Samples of the first stream
            stream_b: Samples of the second stream
            window: Span to compare (defaults to the configured correlation window)
            now: End of the span (defaults to the latest sample)
            name_a / name_b: Identifiers recorded on signals (default: instrument ids)

        Returns:
            Lead/lag/coincident signal above the strength threshold, plus any
            divergence signals. Lead/lag needs history on both streams;
            divergence only on the stream that moved, so a sparse or empty
            counterpart counts as quiet.
        """
        if not stream_a and not stream_b:
            return []

        window = window or self.config.correlation_window
        name_a = name_a or (stream_a[0].instrument_id if stream_a else "stream_a")
        name_b = name_b or (stream_b[0].instrument_id if stream_b else "stream_b")
        if now is None:
            end = max(epoch(s.timestamp) for s in (*stream_a, *stream_b))
            detected_at = max(to_utc(s.timestamp) for s in (*stream_a, *stream_b))
        else:
            end = epoch(now)
            detected_at = to_utc(now)

        bins = max(2, int(window.total_seconds() // self._resolution_s))
        start = end - bins * self._resolution_s

        a, observed_a = self._resample(stream_a, start, bins)
        b, observed_b = self._resample(stream_b, start, bins)
        ready_a = self._has_history(stream_a, observed_a, name_a, name_b)
        ready_b = self._has_history(stream_b, observed_b, name_b, name_a)

        za, zb = _zscore(a), _zscore(b)
        signals: list[CorrelationSignal] = []

        if ready_a and ready_b and za is not None and zb is not None:
            lag, r = self._best_lag(za, zb)
            strength = abs(r)
            if strength >= self.config.correlation_strength_threshold:
                pattern = "leads" if lag > 0 else "lags" if lag < 0 else "coincident"
                signals.append(
                    CorrelationSignal(
                        stream_a=name_a,
                        stream_b=name_b,
                        lag_estimate=timedelta(seconds=abs(lag) * self._resolution_s),
                        strength=round(strength, 4),
                        correlation=round(r, 4),
                        pattern=pattern,
                        detected_at=detected_at,
                    )
                )

        # Divergence is defined by absence of correlated movement, so it is
        # checked regardless of the correlation result.
        if ready_a and za is not None:
            diverged = self._divergence(za, zb, name_a, name_b, detected_at)
            if diverged:
                signals.append(diverged)
        if ready_b and zb is not None:
            diverged = self._divergence(zb, za, name_b, name_a, detected_at)
            if diverged:
                signals.append(diverged)

        return signals

    def _pairs(
        self, series: dict[TimeSeriesKey, list[StreamSample]]
    ) -> list[tuple[TimeSeriesKey, TimeSeriesKey]]:
        """Market instruments against news-derived keys whose activity overlaps."""
        markets = [k for k in series if k.kind == "market-instrument"]
        others = [k for k in series if k.kind != "market-instrument"]
        if not markets or not others:
            return []

        def span(key):
            stamps = [to_utc(s.timestamp) for s in series[key]]
            return min(stamps), max(stamps)

        spans = {k: span(k) for k in series}
        # Busiest news keys first so the pair cap keeps the most relevant ones
        others.sort(key=lambda k: (-len(series[k]), str(k)))

        pairs = []
        for market in sorted(markets, key=str):
            m_start, m_end = spans[market]
            for other in others:
                o_start, o_end = spans[other]
                if o_start <= m_end and m_start <= o_end:
                    pairs.append((market, other))
        return pairs[: self.config.correlation_max_pairs]

    @staticmethod
    def _fingerprint(samples: list[StreamSample]) -> tuple:
        return (len(samples), to_utc(samples[-1].timestamp) if samples else None)

    def evaluate(
        self,
        series: dict[TimeSeriesKey, list[StreamSample]],
        now: datetime | None = None,
    ) -> list[CorrelationSignal]:
        """
        Evaluate every tracked pair, recomputing only pairs with new samples.

        Returns:
            All current signals, strongest first
        """
        now = to_utc(now) if now else utc_now()
        pairs = self._pairs(series)

        fingerprints: dict[str, tuple[tuple, tuple]] = {}
        cached: dict[str, list[CorrelationSignal]] = {}
        recomputed = 0

        for key_a, key_b in pairs:
            pair_id = f"{key_a}|{key_b}"
            fp = (self._fingerprint(series[key_a]), self._fingerprint(series[key_b]))
            fingerprints[pair_id] = fp

            if self._fingerprints.get(pair_id) == fp and pair_id in self._cached:
                cached[pair_id] = self._cached[pair_id]
                continue

            recomputed += 1
            cached[pair_id] = self.detect(
                series[key_a],
                series[key_b],
                self.config.correlation_window,
                now=now,
                name_a=str(key_a),
                name_b=str(key_b),
            )

        self._fingerprints = fingerprints
        self._cached = cached

        signals = [s for group in cached.values() for s in group]
        signals.sort(key=lambda s: s.strength, reverse=True)
        if pairs:
            logger.info(
                f"Correlation: {len(pairs)} pairs ({recomputed} recomputed), "
                f"{len(signals)} signals"
            )
        return signals
