"""
Builders shared by several test modules.
"""

from datetime import datetime

from radar.analysis.types import Deviation, StreamSample, TimeSeriesKey, VelocityMetrics, WindowStats


def market_sample(instrument: str, ts: datetime, value: float) -> StreamSample:
    return StreamSample(
        stream_kind="prediction_market", instrument_id=instrument, timestamp=ts, value=value
    )


def news_sample(key: str, ts: datetime, value: float = 1.0) -> StreamSample:
    return StreamSample(stream_kind="news", instrument_id=key, timestamp=ts, value=value)


def spiking_metrics(key: TimeSeriesKey, at: datetime, anomalous: bool = True) -> VelocityMetrics:
    """VelocityMetrics with one 1h window, spiking or calm."""
    count = 10.0 if anomalous else 2.0
    return VelocityMetrics(
        key=key,
        windows={
            "1h": WindowStats(
                window="1h",
                count=count,
                rolling_mean=2.0,
                rolling_std_dev=1.0,
                periods=5,
                z_score=Deviation.score(count - 2.0),
                anomalous=anomalous,
            )
        },
        updated_at=at,
    )
