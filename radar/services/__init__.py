"""
Service layer - tick orchestration around the detection core.

Provides:
- IntakeBuffer: Serializes overlapping ingestion batches
- CircuitBreaker: Skips writes to a failing store
- PersistenceWriter: Best-effort background persistence
- NotificationSink: Output delivery interface
- SignalPipeline: Fork, run stages, commit
- TickScheduler: Periodic ticks with forced refresh
"""

from radar.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from radar.services.intake import IntakeBuffer, TickInput
from radar.services.persistence import PersistenceWriter
from radar.services.sink import FanoutSink, LogSink, NotificationSink
from radar.services.pipeline import PipelineState, SignalPipeline
from radar.services.scheduler import TickScheduler

__all__ = [
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Intake
    "IntakeBuffer",
    "TickInput",
    # Persistence
    "PersistenceWriter",
    # Sinks
    "FanoutSink",
    "LogSink",
    "NotificationSink",
    # Pipeline
    "PipelineState",
    "SignalPipeline",
    "TickScheduler",
]
