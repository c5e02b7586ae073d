"""
Notification sinks - receive pipeline output as it is produced.

Sinks never format for a particular channel; delivery lives outside the core.
"""

from abc import ABC, abstractmethod

from loguru import logger

from radar.analysis.types import Alert, ClusteredEvent, VelocityMetrics


class NotificationSink(ABC):
    """Receiver of event updates, velocity updates and alerts."""

    name: str = "sink"

    @abstractmethod
    async def on_events(self, events: list[ClusteredEvent]) -> None: ...

    @abstractmethod
    async def on_velocity(self, metrics: list[VelocityMetrics]) -> None: ...

    @abstractmethod
    async def on_alerts(self, alerts: list[Alert]) -> None: ...


class LogSink(NotificationSink):
    """Writes output to the log."""

    name = "log"

    async def on_events(self, events: list[ClusteredEvent]) -> None:
        for event in events:
            logger.debug(
                f"[event] {event.id} sources={event.source_count} "
                f"'{event.primary_title[:80]}'"
            )

    async def on_velocity(self, metrics: list[VelocityMetrics]) -> None:
        for m in metrics:
            if m.anomalous:
                logger.info(f"[velocity] {m.key} spiking in {', '.join(m.anomalous_windows)}")

    async def on_alerts(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            kinds = ", ".join(sorted(alert.confirmation_kinds))
            logger.info(
                f"[ALERT] {alert.triggering_key} confidence={alert.confidence_score:.2f} ({kinds})"
            )


class FanoutSink(NotificationSink):
    """Delivers to several sinks; one failing sink never blocks the others."""

    name = "fanout"

    def __init__(self, sinks: list[NotificationSink] | None = None):
        self.sinks = list(sinks or [])

    def add(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    async def _each(self, method: str, payload: list) -> None:
        if not payload:
            return
        for sink in self.sinks:
            try:
                await getattr(sink, method)(payload)
            except Exception as e:
                logger.error(f"Failed to deliver {method} to '{sink.name}': {e}")

    async def on_events(self, events: list[ClusteredEvent]) -> None:
        await self._each("on_events", events)

    async def on_velocity(self, metrics: list[VelocityMetrics]) -> None:
        await self._each("on_velocity", metrics)

    async def on_alerts(self, alerts: list[Alert]) -> None:
        await self._each("on_alerts", alerts)
