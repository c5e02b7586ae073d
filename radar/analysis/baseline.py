"""
Long-run baselines - 7-day and 30-day rolling activity profiles per key.

Activity is accumulated into fixed periods (hourly by default). Closed periods
enter a bounded history with running sums, so rolling mean and standard
deviation never require replaying raw samples. Rolling happens at most once
per period regardless of how often the pipeline ticks.
"""

import copy
import math
from collections import deque
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from radar.analysis.types import BaselineRecord, Deviation, TimeSeriesKey
from radar.utils import epoch, to_utc

_EPSILON = 1e-12


class _RunningWindow:
    """Sum and sum of squares over the trailing `size` values of a shared history."""

    __slots__ = ("size", "total", "squares")

    def __init__(self, size: int):
        self.size = size
        self.total = 0.0
        self.squares = 0.0

    def stats(self, history: deque) -> tuple[float, float, int]:
        n = min(len(history), self.size)
        if n == 0:
            return 0.0, 0.0, 0
        mean = self.total / n
        variance = max(self.squares / n - mean * mean, 0.0)
        return mean, math.sqrt(variance), n


class BaselineState:
    """Per-key period history for the baseline windows."""

    def __init__(self, first_period: int, short_periods: int, long_periods: int):
        self.first_period = first_period
        self.next_period = first_period  # first period not yet closed
        self.last_active = first_period
        self.pending: dict[int, float] = {}
        self.current: float | None = None  # most recently closed period
        self.history: deque[float] = deque()
        self.short = _RunningWindow(short_periods)
        self.long = _RunningWindow(long_periods)
        self.record: BaselineRecord | None = None

    def fork(self) -> "BaselineState":
        clone = copy.copy(self)
        clone.pending = dict(self.pending)
        clone.history = deque(self.history)
        clone.short = copy.copy(self.short)
        clone.long = copy.copy(self.long)
        return clone

    def add(self, period: int, value: float) -> bool:
        if period < self.next_period:
            return False
        self.pending[period] = self.pending.get(period, 0.0) + value
        self.last_active = max(self.last_active, period)
        return True

    def close_until(self, period: int) -> bool:
        """Close every period before `period`. Returns True if anything closed."""
        if period <= self.next_period:
            return False

        # Periods beyond the long window would be evicted anyway
        gap = period - self.next_period
        overflow = gap - (self.long.size + 1)
        if overflow > 0:
            self.next_period += overflow
            self.pending = {p: v for p, v in self.pending.items() if p >= self.next_period}

        while self.next_period < period:
            self._close(self.pending.pop(self.next_period, 0.0))
            self.next_period += 1
        return True

    def _close(self, value: float) -> None:
        if self.current is not None:
            self._push(self.current)
        self.current = value

    def _push(self, value: float) -> None:
        history = self.history
        if len(history) >= self.short.size:
            leaving = history[-self.short.size]
            self.short.total -= leaving
            self.short.squares -= leaving * leaving
        if len(history) >= self.long.size:
            leaving = history.popleft()
            self.long.total -= leaving
            self.long.squares -= leaving * leaving
        history.append(value)
        self.short.total += value
        self.short.squares += value * value
        self.long.total += value
        self.long.squares += value * value

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_period": self.first_period,
            "next_period": self.next_period,
            "last_active": self.last_active,
            "pending": {str(p): v for p, v in self.pending.items()},
            "current": self.current,
            "history": list(self.history),
            "record": self.record.model_dump(mode="json") if self.record else None,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], short_periods: int, long_periods: int
    ) -> "BaselineState":
        state = cls(int(data["first_period"]), short_periods, long_periods)
        state.next_period = int(data["next_period"])
        state.pending = {int(p): float(v) for p, v in data.get("pending", {}).items()}
        state.last_active = int(
            data.get("last_active", max(state.pending, default=state.next_period - 1))
        )
        for value in data.get("history", [])[-long_periods:]:
            state._push(float(value))
        state.current = data.get("current")
        if data.get("record"):
            state.record = BaselineRecord.model_validate(data["record"])
        return state


class BaselineTracker:
    """
    Maintains BaselineRecords for every key.

    Usage:
        tracker = BaselineTracker(interval=timedelta(hours=1))
        tracker.record(key, ts, 1.0)
        tracker.roll(now)           # no-op until an interval has elapsed
        tracker.deviation(key)      # Deviation, possibly insufficient_history
    """

    def __init__(
        self,
        interval: timedelta = timedelta(hours=1),
        short_days: int = 7,
        long_days: int = 30,
        min_periods: int = 24,
        primary: str = "7d",
    ):
        self.interval = interval
        self._interval_s = interval.total_seconds()
        self.short_periods = max(1, int(timedelta(days=short_days) / interval))
        self.long_periods = max(self.short_periods, int(timedelta(days=long_days) / interval))
        self.min_periods = min_periods
        self.primary = primary
        self._states: dict[TimeSeriesKey, BaselineState] = {}
        self._last_roll: datetime | None = None

    def fork(self) -> "BaselineTracker":
        clone = copy.copy(self)
        clone._states = {key: state.fork() for key, state in self._states.items()}
        return clone

    def _period(self, ts: datetime) -> int:
        return int(epoch(ts) // self._interval_s)

    def record(self, key: TimeSeriesKey, timestamp: datetime, value: float) -> bool:
        """Accumulate activity; returns False for periods already closed."""
        period = self._period(timestamp)
        state = self._states.get(key)
        if state is None:
            state = BaselineState(period, self.short_periods, self.long_periods)
            self._states[key] = state
        return state.add(period, value)

    def due(self, now: datetime) -> bool:
        return self._last_roll is None or to_utc(now) - self._last_roll >= self.interval

    def roll(self, now: datetime, force: bool = False) -> list[TimeSeriesKey]:
        """
        Close elapsed periods and refresh records.

        Runs at most once per interval unless forced. Keys with no activity
        for longer than the long window are dropped.

        Returns:
            Keys whose BaselineRecord changed
        """
        now = to_utc(now)
        if not force and not self.due(now):
            return []

        now_period = self._period(now)
        idle = [
            key
            for key, state in self._states.items()
            if now_period - state.last_active > self.long_periods
        ]
        if idle:
            self.discard(idle)
            logger.info(f"[baseline] pruned {len(idle)} idle keys, {len(self._states)} kept")

        changed = []
        for key, state in self._states.items():
            if state.close_until(now_period):
                state.record = self._build_record(state, now)
                changed.append(key)

        self._last_roll = now
        if changed:
            logger.debug(f"[baseline] rolled {len(changed)} keys at {now.isoformat()}")
        return changed

    def _build_record(self, state: BaselineState, now: datetime) -> BaselineRecord:
        short_mean, short_std, _ = state.short.stats(state.history)
        long_mean, long_std, _ = state.long.stats(state.history)
        periods = len(state.history)
        return BaselineRecord(
            seven_day_mean=short_mean,
            seven_day_std_dev=short_std,
            thirty_day_mean=long_mean,
            thirty_day_std_dev=long_std,
            current_value=state.current or 0.0,
            periods=periods,
            low_confidence=periods < self.short_periods,
            last_updated=now,
        )

    def record_of(self, key: TimeSeriesKey) -> BaselineRecord | None:
        state = self._states.get(key)
        return state.record if state else None

    def deviation(self, key: TimeSeriesKey, window: str | None = None) -> Deviation:
        """Latest closed period against the 7d or 30d baseline, as a z-score."""
        record = self.record_of(key)
        if record is None or record.periods < self.min_periods:
            return Deviation.insufficient()

        if (window or self.primary) == "30d":
            mean, std = record.thirty_day_mean, record.thirty_day_std_dev
        else:
            mean, std = record.seven_day_mean, record.seven_day_std_dev

        if std <= _EPSILON:
            return Deviation.no_signal()
        return Deviation.score((record.current_value - mean) / std)

    def keys(self) -> list[TimeSeriesKey]:
        return list(self._states)

    def discard(self, keys: list[TimeSeriesKey]) -> int:
        removed = 0
        for key in keys:
            if self._states.pop(key, None) is not None:
                removed += 1
        return removed

    def export_state(self, key: TimeSeriesKey) -> dict[str, Any] | None:
        state = self._states.get(key)
        return state.to_dict() if state else None

    def import_state(self, key: TimeSeriesKey, data: dict[str, Any]) -> None:
        self._states[key] = BaselineState.from_dict(
            data, self.short_periods, self.long_periods
        )
