"""
AlertGate - precision-first decision logic turning anomalies into alerts.

States (per triggering key):
- IDLE: Nothing unusual
- ARMED: Mention velocity is anomalous, waiting for a confirmation
- FIRED: An alert was created this tick
- COOLDOWN: Alert already surfaced, further alerts suppressed

Transitions:
- IDLE → ARMED: Velocity anomaly
- ARMED → IDLE: Velocity back to normal without confirmation
- ARMED → FIRED: Velocity anomaly plus at least one confirming signal
- FIRED → COOLDOWN: Immediately after the alert is created
- COOLDOWN → IDLE: After the cooldown window expires
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from loguru import logger

from radar.analysis.config import RadarConfig
from radar.analysis.types import (
    Alert,
    ConfirmingSignal,
    CorrelationSignal,
    Deviation,
    SentimentShift,
    TimeSeriesKey,
    VelocityMetrics,
)
from radar.utils import stable_hash, to_utc

# Confidence with a bare velocity anomaly; confirmations only push it up
BASE_CONFIDENCE = 0.3

CONFIRMATION_WEIGHTS = {
    "sentiment_shift": 0.5,
    "source_diversity": 0.4,
    "tier1_source": 0.5,
    "correlation": 0.6,
}
BASELINE_WEIGHT = 0.3


class GateState(str, Enum):
    """Alert gate states."""

    IDLE = "IDLE"
    ARMED = "ARMED"
    FIRED = "FIRED"
    COOLDOWN = "COOLDOWN"


@dataclass
class KeyGate:
    """State machine for one triggering key."""

    key: TimeSeriesKey
    state: GateState = GateState.IDLE
    armed_at: datetime | None = None
    suppressed_until: datetime | None = None
    last_alert_id: str | None = None


@dataclass
class GateInput:
    """What the gate needs to know about one key this tick. Missing fields never confirm."""

    key: TimeSeriesKey
    velocity: VelocityMetrics | None = None
    sentiment_shift: SentimentShift | None = None
    baseline_deviation: Deviation | None = None
    diversity_events: list[str] = field(default_factory=list)
    tier1_sources: list[str] = field(default_factory=list)


@dataclass
class GateTick:
    """One tick's worth of gate input."""

    now: datetime
    inputs: dict[TimeSeriesKey, GateInput] = field(default_factory=dict)
    correlations: list[CorrelationSignal] = field(default_factory=list)


class AlertGate:
    """
    Combines velocity anomalies with independent confirmations.

    Velocity alone never fires. Each fired key is suppressed for the
    configured cooldown.

    Usage:
        gate = AlertGate(config)
        alerts = gate.evaluate(GateTick(now=now, inputs=inputs, correlations=signals))
    """

    def __init__(self, config: RadarConfig | None = None):
        self.config = config or RadarConfig()
        self._gates: dict[TimeSeriesKey, KeyGate] = {}

    def fork(self) -> "AlertGate":
        clone = copy.copy(self)
        clone._gates = copy.deepcopy(self._gates)
        return clone

    def state_of(self, key: TimeSeriesKey) -> GateState:
        gate = self._gates.get(key)
        return gate.state if gate else GateState.IDLE

    def states(self) -> dict[str, GateState]:
        return {str(key): gate.state for key, gate in self._gates.items()}

    def confirmations(
        self, gate_input: GateInput, correlations: list[CorrelationSignal]
    ) -> list[ConfirmingSignal]:
        """Every confirming condition that holds for a key this tick."""
        found: list[ConfirmingSignal] = []

        shift = gate_input.sentiment_shift
        if shift is not None:
            found.append(
                ConfirmingSignal(
                    kind="sentiment_shift",
                    strength=min(1.0, abs(shift.delta) / (2 * self.config.sentiment_delta)),
                    reference=shift.window,
                    detail=f"{shift.previous:+.1f} -> {shift.current:+.1f}",
                )
            )

        for event_id in gate_input.diversity_events:
            found.append(
                ConfirmingSignal(
                    kind="source_diversity",
                    strength=1.0,
                    reference=event_id,
                    detail="coverage turned majority-mainstream",
                )
            )

        for source in gate_input.tier1_sources:
            found.append(
                ConfirmingSignal(
                    kind="tier1_source",
                    strength=1.0,
                    reference=source,
                    detail="tier-1 source joined",
                )
            )

        threshold = self.config.correlation_strength_threshold
        for signal in correlations:
            if signal.strength < threshold or not signal.references(gate_input.key):
                continue
            found.append(
                ConfirmingSignal(
                    kind="correlation",
                    strength=min(1.0, signal.strength),
                    reference=f"{signal.pair_id}:{signal.pattern}",
                    detail=f"{signal.pattern} by {signal.lag_estimate}",
                )
            )

        return found

    def confidence(
        self, signals: list[ConfirmingSignal], baseline: Deviation | None = None
    ) -> float:
        """
        Noisy-OR over confirmations.

        Adding a confirmation or strengthening one never lowers the score.
        """
        miss = 1.0 - BASE_CONFIDENCE
        for signal in signals:
            miss *= 1.0 - CONFIRMATION_WEIGHTS[signal.kind] * signal.strength

        sigma = self.config.sigma_threshold
        if baseline is not None and baseline.exceeds(sigma):
            strength = min(1.0, baseline.value / (2 * sigma))
            miss *= 1.0 - BASELINE_WEIGHT * strength

        return round(1.0 - miss, 4)

    def evaluate(self, tick: GateTick) -> list[Alert]:
        """
        Advance every gate by one tick.

        Returns:
            Alerts fired this tick
        """
        now = to_utc(tick.now)
        alerts: list[Alert] = []

        for key in sorted(set(self._gates) | set(tick.inputs), key=str):
            gate = self._gates.get(key) or KeyGate(key=key)
            gate_input = tick.inputs.get(key) or GateInput(key=key)
            anomalous = gate_input.velocity is not None and gate_input.velocity.anomalous

            if gate.state == GateState.COOLDOWN:
                if gate.suppressed_until and now < gate.suppressed_until:
                    if anomalous:
                        logger.debug(
                            f"[gate] {key} suppressed until {gate.suppressed_until.isoformat()}"
                        )
                    self._gates[key] = gate
                    continue
                gate.state = GateState.IDLE
                gate.suppressed_until = None

            if gate.state == GateState.IDLE and anomalous:
                gate.state = GateState.ARMED
                gate.armed_at = now
                logger.debug(f"[gate] {key} armed")

            if gate.state == GateState.ARMED:
                if not anomalous:
                    gate.state = GateState.IDLE
                    gate.armed_at = None
                else:
                    signals = self.confirmations(gate_input, tick.correlations)
                    if signals:
                        alert = self._fire(gate, gate_input, signals, now)
                        alerts.append(alert)

            if gate.state == GateState.IDLE:
                self._gates.pop(key, None)
            else:
                self._gates[key] = gate

        if alerts:
            logger.info(
                f"[gate] {len(alerts)} alerts fired: "
                + ", ".join(str(a.triggering_key) for a in alerts)
            )
        return alerts

    def _fire(
        self,
        gate: KeyGate,
        gate_input: GateInput,
        signals: list[ConfirmingSignal],
        now: datetime,
    ) -> Alert:
        gate.state = GateState.FIRED
        suppressed_until = now + self.config.alert_cooldown
        alert = Alert(
            id=stable_hash("alert", str(gate.key), now.isoformat()),
            triggering_key=gate.key,
            confirming_signals=signals,
            confidence_score=self.confidence(signals, gate_input.baseline_deviation),
            created_at=now,
            suppressed_until=suppressed_until,
            velocity_z=gate_input.velocity.peak_z if gate_input.velocity else None,
            baseline_deviation=gate_input.baseline_deviation,
        )

        gate.last_alert_id = alert.id
        gate.state = GateState.COOLDOWN
        gate.suppressed_until = suppressed_until
        gate.armed_at = None
        logger.debug(
            f"[gate] {gate.key} fired {alert.id} "
            f"(confidence={alert.confidence_score:.2f}, kinds={sorted(alert.confirmation_kinds)})"
        )
        return alert
