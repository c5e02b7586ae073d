"""
Detection data model using Pydantic models.
"""

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

StreamKind = Literal["news", "prediction_market", "price"]
KeyKind = Literal["event", "hotspot", "category", "monitor", "market-instrument"]
DeviationStatus = Literal["score", "no_signal", "insufficient_history"]
CorrelationPattern = Literal["leads", "lags", "coincident", "diverges"]
ConfirmationKind = Literal[
    "sentiment_shift", "source_diversity", "tier1_source", "correlation"
]


class RawItem(BaseModel):
    """A single ingested news item."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    source_name: str = Field(min_length=1)
    tier: int = Field(ge=1, le=4)
    title: str = Field(min_length=1)
    url: str = ""
    published_at: datetime
    stream_kind: StreamKind = "news"


class StreamSample(BaseModel):
    """A prediction-market probability or price observation."""

    model_config = ConfigDict(frozen=True)

    stream_kind: StreamKind
    instrument_id: str = Field(min_length=1)
    timestamp: datetime
    value: float


class TimeSeriesKey(BaseModel):
    """Identifies a tracked quantity."""

    model_config = ConfigDict(frozen=True)

    kind: KeyKind
    identifier: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.identifier}"

    @classmethod
    def parse(cls, value: str) -> "TimeSeriesKey":
        kind, _, identifier = value.partition(":")
        return cls(kind=kind, identifier=identifier)


class SourceRef(BaseModel):
    """A source credited on an event."""

    name: str
    tier: int
    first_seen: datetime


class MemberRef(BaseModel):
    """What an event remembers about each member item."""

    source_name: str
    tier: int
    title: str
    published_at: datetime


class ClusteredEvent(BaseModel):
    """Canonical real-world event built from duplicate reporting."""

    id: str
    primary_title: str
    member_item_ids: set[str] = Field(default_factory=set)
    top_sources: list[SourceRef] = Field(default_factory=list)
    first_seen: datetime
    last_updated: datetime
    retired: bool = False
    members: dict[str, MemberRef] = Field(default_factory=dict)

    @property
    def key(self) -> TimeSeriesKey:
        return TimeSeriesKey(kind="event", identifier=self.id)

    @property
    def source_count(self) -> int:
        return len(self.top_sources)

    @property
    def source_names(self) -> list[str]:
        return [s.name for s in self.top_sources]

    @property
    def mainstream_count(self) -> int:
        return sum(1 for s in self.top_sources if s.tier <= 2)

    @property
    def niche_count(self) -> int:
        return sum(1 for s in self.top_sources if s.tier >= 3)


class Deviation(BaseModel):
    """A z-score, or the reason there is none."""

    status: DeviationStatus
    value: float | None = None

    @classmethod
    def score(cls, value: float) -> "Deviation":
        return cls(status="score", value=value)

    @classmethod
    def no_signal(cls) -> "Deviation":
        return cls(status="no_signal")

    @classmethod
    def insufficient(cls) -> "Deviation":
        return cls(status="insufficient_history")

    @property
    def is_numeric(self) -> bool:
        return self.status == "score"

    def exceeds(self, sigma: float) -> bool:
        return self.is_numeric and self.value is not None and self.value > sigma


class WindowStats(BaseModel):
    """Rolling statistics for one window size."""

    window: str
    count: float
    rolling_mean: float
    rolling_std_dev: float
    periods: int
    z_score: Deviation
    anomalous: bool = False


class VelocityMetrics(BaseModel):
    """Per-key windowed velocity."""

    key: TimeSeriesKey
    windows: dict[str, WindowStats] = Field(default_factory=dict)
    updated_at: datetime

    @property
    def anomalous(self) -> bool:
        return any(w.anomalous for w in self.windows.values())

    @property
    def anomalous_windows(self) -> list[str]:
        return [label for label, w in self.windows.items() if w.anomalous]

    @property
    def peak_z(self) -> float | None:
        scores = [
            w.z_score.value
            for w in self.windows.values()
            if w.anomalous and w.z_score.is_numeric
        ]
        return max(scores) if scores else None


class BaselineRecord(BaseModel):
    """Long-run activity profile for a key."""

    seven_day_mean: float = 0.0
    seven_day_std_dev: float = 0.0
    thirty_day_mean: float = 0.0
    thirty_day_std_dev: float = 0.0
    current_value: float = 0.0
    periods: int = 0
    low_confidence: bool = True
    last_updated: datetime


class SentimentShift(BaseModel):
    """Sentiment change coinciding with a mention spike."""

    window: str
    previous: float
    current: float

    @property
    def delta(self) -> float:
        return self.current - self.previous


class CorrelationSignal(BaseModel):
    """Detected lead/lag/divergence relationship between two streams."""

    stream_a: str
    stream_b: str
    lag_estimate: timedelta
    strength: float
    correlation: float = 0.0
    pattern: CorrelationPattern
    detected_at: datetime

    @property
    def pair_id(self) -> str:
        return f"{self.stream_a}|{self.stream_b}"

    def references(self, key: TimeSeriesKey | str) -> bool:
        key_str = str(key)
        return key_str in (self.stream_a, self.stream_b)


class ConfirmingSignal(BaseModel):
    """One confirmation that held when an alert fired."""

    model_config = ConfigDict(frozen=True)

    kind: ConfirmationKind
    strength: float = Field(ge=0.0, le=1.0)
    reference: str = ""
    detail: str = ""


class Alert(BaseModel):
    """Surfaced high-confidence signal."""

    id: str
    triggering_key: TimeSeriesKey
    confirming_signals: list[ConfirmingSignal] = Field(default_factory=list)
    confidence_score: float
    created_at: datetime
    suppressed_until: datetime
    velocity_z: float | None = None
    baseline_deviation: Deviation | None = None

    @field_validator("confirming_signals")
    @classmethod
    def _unique_signals(cls, value: list[ConfirmingSignal]) -> list[ConfirmingSignal]:
        seen = set()
        unique = []
        for signal in value:
            if (signal.kind, signal.reference) in seen:
                continue
            seen.add((signal.kind, signal.reference))
            unique.append(signal)
        return unique

    @property
    def confirmation_kinds(self) -> set[str]:
        return {s.kind for s in self.confirming_signals}


class TickResult(BaseModel):
    """Everything one committed tick produced."""

    tick: int
    started_at: datetime
    events: list[ClusteredEvent] = Field(default_factory=list)
    velocity: list[VelocityMetrics] = Field(default_factory=list)
    correlations: list[CorrelationSignal] = Field(default_factory=list)
    alerts: list[Alert] = Field(default_factory=list)
    skipped_items: int = 0
    stale_items: int = 0

    @property
    def status(self) -> str:
        if not self.alerts:
            return "MONITORING"
        return f"{len(self.alerts)} ALERTS"

    def summary(self) -> dict[str, Any]:
        return {
            "tick": self.tick,
            "status": self.status,
            "events": len(self.events),
            "velocity_updates": len(self.velocity),
            "correlations": len(self.correlations),
            "alerts": [str(a.triggering_key) for a in self.alerts],
            "skipped_items": self.skipped_items,
            "stale_items": self.stale_items,
        }
