"""
Detection pipeline core: clustering, velocity/baselines, correlation and gating.
"""

from radar.analysis.types import (
    Alert,
    BaselineRecord,
    ClusteredEvent,
    ConfirmingSignal,
    CorrelationSignal,
    Deviation,
    RawItem,
    StreamSample,
    TickResult,
    TimeSeriesKey,
    VelocityMetrics,
)
from radar.analysis.clusterer import Clusterer, ClusterStore
from radar.analysis.velocity import VelocityEngine
from radar.analysis.baseline import BaselineTracker
from radar.analysis.correlation import CorrelationEngine
from radar.analysis.alert_gate import AlertGate, GateInput, GateState, GateTick
from radar.analysis.config import (
    REGION_KEYWORDS,
    TOPIC_KEYWORDS,
    KeyDeriver,
    RadarConfig,
    load_radar_config,
)

__all__ = [
    # Types
    "Alert",
    "BaselineRecord",
    "ClusteredEvent",
    "ConfirmingSignal",
    "CorrelationSignal",
    "Deviation",
    "RawItem",
    "StreamSample",
    "TickResult",
    "TimeSeriesKey",
    "VelocityMetrics",
    # Engines
    "Clusterer",
    "ClusterStore",
    "VelocityEngine",
    "BaselineTracker",
    "CorrelationEngine",
    "AlertGate",
    "GateInput",
    "GateState",
    "GateTick",
    # Config
    "REGION_KEYWORDS",
    "TOPIC_KEYWORDS",
    "KeyDeriver",
    "RadarConfig",
    "load_radar_config",
]
