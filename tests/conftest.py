"""
Shared fixtures for the radar test suite.
"""

from datetime import datetime, timedelta, timezone

import pytest

from radar.analysis.config import RadarConfig
from radar.analysis.types import RawItem, TimeSeriesKey


@pytest.fixture
def t0() -> datetime:
    """Hour-aligned reference time."""
    return datetime(2025, 1, 15, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def config() -> RadarConfig:
    return RadarConfig()


@pytest.fixture
def hourly_config() -> RadarConfig:
    """Single 1h velocity window so spikes are easy to construct."""
    return RadarConfig(
        velocity_windows=[timedelta(hours=1)],
        velocity_min_periods=3,
        min_spike_count=3,
    )


@pytest.fixture
def make_item(t0):
    """Factory for RawItems with sensible defaults."""

    def _make(
        item_id: str,
        title: str,
        source: str = "Reuters",
        tier: int = 1,
        published_at: datetime | None = None,
    ) -> RawItem:
        return RawItem(
            id=item_id,
            source_name=source,
            tier=tier,
            title=title,
            url=f"https://example.com/{item_id}",
            published_at=published_at or t0,
        )

    return _make


@pytest.fixture
def market_key() -> TimeSeriesKey:
    return TimeSeriesKey(kind="market-instrument", identifier="pm-iran-strike")

