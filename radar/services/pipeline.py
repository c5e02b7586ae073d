"""
SignalPipeline - one tick of clustering, velocity, correlation and gating.

Each tick works on forks of the committed state. Stages run strictly in order
(cluster -> velocity -> correlation -> gate) and only a fully completed tick is
committed. A stage that fails keeps the previous state for its store and hands
an empty output to the next stage; a cancelled tick commits nothing and puts
its input back for the next one.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError

from radar.analysis.alert_gate import AlertGate, GateInput, GateTick
from radar.analysis.clusterer import (
    Clusterer,
    ClusterStore,
    diversity_crossed,
    tier1_additions,
)
from radar.analysis.config import KeyDeriver, RadarConfig
from radar.analysis.correlation import CorrelationEngine
from radar.analysis.sentiment import SentimentRules
from radar.analysis.types import (
    Alert,
    ClusteredEvent,
    CorrelationSignal,
    RawItem,
    StreamSample,
    TickResult,
    TimeSeriesKey,
    VelocityMetrics,
)
from radar.analysis.velocity import VelocityEngine
from radar.datasource.base import IngestionAdapter, parse_payload
from radar.datastore.repositories import (
    BASELINES,
    CURRENT_EVENTS,
    SNAPSHOTS,
    VELOCITY_HISTORY,
    KeyValueStore,
)
from radar.exceptions import MalformedInput, StaleClock
from radar.services.intake import IntakeBuffer, TickInput
from radar.services.persistence import DELETE, PersistenceWriter
from radar.services.sink import FanoutSink, NotificationSink
from radar.utils import timed_stage, to_utc, utc_now

# Alerts kept in the committed state for snapshots
RECENT_ALERTS = 100


@dataclass
class PipelineState:
    """Committed output of the last completed tick. Never mutated after commit."""

    clusters: ClusterStore
    velocity: VelocityEngine
    correlation: CorrelationEngine
    gate: AlertGate
    tick: int = 0
    last_tick_at: datetime | None = None
    correlations: list[CorrelationSignal] = field(default_factory=list)
    recent_alerts: list[Alert] = field(default_factory=list)


@dataclass
class VelocityOutput:
    metrics: list[VelocityMetrics] = field(default_factory=list)
    item_keys: dict[str, list[TimeSeriesKey]] = field(default_factory=dict)
    baseline_changed: list[TimeSeriesKey] = field(default_factory=list)
    stale: int = 0


class SignalPipeline:
    """
    Owns all detection state for one pipeline instance.

    Usage:
        pipeline = SignalPipeline(config, store=SqlKeyValueStore(factory))
        await pipeline.restore()
        await pipeline.submit(items=[...], samples=[...])
        result = await pipeline.tick()
        state = pipeline.snapshot()
    """

    def __init__(
        self,
        config: RadarConfig | None = None,
        store: KeyValueStore | None = None,
        sinks: list[NotificationSink] | None = None,
        adapters: list[IngestionAdapter] | None = None,
        write_timeout: float = 2.0,
        snapshot_every: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or RadarConfig()
        self.intake = IntakeBuffer()
        self.writer = PersistenceWriter(store, timeout=write_timeout) if store else None
        self.sink = FanoutSink(sinks)
        self.adapters = list(adapters or [])
        self.snapshot_every = snapshot_every
        self._clock = clock

        self.sentiment = SentimentRules.from_sets(self.config.sentiment_keyword_sets)
        self.deriver = KeyDeriver(self.config)

        self._state = PipelineState(
            clusters=ClusterStore(),
            velocity=VelocityEngine(self.config),
            correlation=CorrelationEngine(self.config),
            gate=AlertGate(self.config),
        )
        self._last_result: TickResult | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def last_result(self) -> TickResult | None:
        return self._last_result

    async def submit(
        self,
        items: list[RawItem | dict] | None = None,
        samples: list[StreamSample | dict] | None = None,
    ) -> int:
        return await self.intake.submit(items=items, samples=samples)

    async def poll_adapters(self) -> None:
        for adapter in self.adapters:
            try:
                items = await adapter.fetch_items()
            except Exception as e:
                logger.warning(f"Adapter '{adapter.adapter_id}' item fetch failed: {e}")
            else:
                # Items reach intake before the sample fetch is awaited
                await self.intake.submit(items=items)

            try:
                samples = await adapter.fetch_samples()
            except Exception as e:
                logger.warning(f"Adapter '{adapter.adapter_id}' sample fetch failed: {e}")
                continue
            await self.intake.submit(samples=samples)

    async def tick(self, now: datetime | None = None) -> TickResult:
        """
        Run one full tick and commit its state.

        Never raises for data or store problems; CancelledError abandons the
        tick and leaves the last committed state in place.
        """
        async with self._lock:
            await self.poll_adapters()
            tick_input = await self.intake.drain()
            base = self._state
            try:
                result, state, baseline_changed = await self._run(tick_input, now)
            except asyncio.CancelledError:
                await self.intake.requeue(tick_input)
                logger.warning(
                    f"Tick {base.tick + 1} abandoned; state kept at tick {base.tick}"
                )
                raise

            self._state = state
            self._last_result = result
            self._persist(base, state, result, baseline_changed)

        await self._emit(result)
        logger.info(f"Tick {result.tick} committed: {result.summary()}")
        return result

    async def _offload(self, fn: Callable, *args):
        """Run CPU-heavy stage work off the event loop."""
        return await asyncio.to_thread(fn, *args)

    def _validate(self, payloads: list, model: type) -> tuple[list, int]:
        valid, skipped = [], 0
        for payload in payloads:
            try:
                valid.append(parse_payload(model, payload))
            except MalformedInput as e:
                skipped += 1
                logger.warning(f"Skipping malformed input: {e}")
        return valid, skipped

    async def _run(
        self, tick_input: TickInput, now: datetime | None
    ) -> tuple[TickResult, PipelineState, list[TimeSeriesKey]]:
        now = to_utc(now) if now else self._clock()
        base = self._state
        tick_no = base.tick + 1

        items, skipped_items = self._validate(tick_input.items, RawItem)
        samples, skipped_samples = self._validate(tick_input.samples, StreamSample)

        # Stages fork the committed state inside the offloaded call; a failed
        # stage falls back to the committed state.

        # Stage 1: clustering
        try:
            clusters, events, assignments = await self._offload(
                self._cluster, base.clusters, items, now
            )
        except Exception as e:
            logger.warning(f"[tick {tick_no}] clustering discarded: {e}")
            clusters, events, assignments = base.clusters, [], []

        # Stage 2: velocity and baselines
        try:
            velocity, velocity_out = await self._offload(
                self._velocity, base.velocity, assignments, samples, now
            )
        except Exception as e:
            logger.warning(f"[tick {tick_no}] velocity update discarded: {e}")
            velocity, velocity_out = base.velocity, VelocityOutput()

        # Stage 3: correlation
        try:
            correlation, correlations = await self._offload(
                self._correlate, base.correlation, velocity, now
            )
        except Exception as e:
            logger.warning(f"[tick {tick_no}] correlation discarded: {e}")
            correlation, correlations = base.correlation, []

        # Stage 4: gating
        gate = base.gate.fork()
        try:
            inputs = self._gate_inputs(
                base.clusters, velocity, events, assignments, velocity_out
            )
            alerts = self._gate(gate, inputs, correlations, now)
        except Exception as e:
            logger.warning(f"[tick {tick_no}] gating discarded: {e}")
            gate, alerts = base.gate, []

        state = PipelineState(
            clusters=clusters,
            velocity=velocity,
            correlation=correlation,
            gate=gate,
            tick=tick_no,
            last_tick_at=now,
            correlations=correlations,
            recent_alerts=(base.recent_alerts + alerts)[-RECENT_ALERTS:],
        )
        result = TickResult(
            tick=tick_no,
            started_at=now,
            events=events,
            velocity=velocity_out.metrics,
            correlations=correlations,
            alerts=alerts,
            skipped_items=skipped_items + skipped_samples,
            stale_items=velocity_out.stale,
        )
        return result, state, velocity_out.baseline_changed

    @timed_stage
    def _cluster(
        self, base: ClusterStore, items: list[RawItem], now: datetime
    ) -> tuple[ClusterStore, list[ClusteredEvent], list[tuple[RawItem, str]]]:
        clusters = base.fork()
        clusterer = Clusterer(clusters, self.config)
        events = clusterer.ingest(items, now=now)
        return clusters, events, clusterer.assignments

    @timed_stage
    def _velocity(
        self,
        base: VelocityEngine,
        assignments: list[tuple[RawItem, str]],
        samples: list[StreamSample],
        now: datetime,
    ) -> tuple[VelocityEngine, VelocityOutput]:
        engine = base.fork()
        out = VelocityOutput()
        touched: dict[TimeSeriesKey, None] = {}

        for item, event_id in assignments:
            event_key = TimeSeriesKey(kind="event", identifier=event_id)
            try:
                engine.ensure_fresh(event_key, item.published_at, now)
            except StaleClock as e:
                out.stale += 1
                logger.warning(f"Excluded from velocity: {e}")
                continue

            keys = [event_key, *self.deriver.derive(item.title)]
            score = self.sentiment.score(item.title)
            for key in keys:
                engine.update(key, item.published_at, 1.0)
                engine.update_sentiment(key, item.published_at, score)
                touched[key] = None
            out.item_keys[item.id] = keys

        for sample in samples:
            key = TimeSeriesKey(kind="market-instrument", identifier=sample.instrument_id)
            try:
                engine.ensure_fresh(key, sample.timestamp, now)
            except StaleClock as e:
                out.stale += 1
                logger.warning(f"Excluded from velocity: {e}")
                continue
            engine.record_sample(sample)
            touched[key] = None

        out.baseline_changed = engine.advance(now)
        out.metrics = [m for m in (engine.metrics(k) for k in touched) if m is not None]
        return engine, out

    @timed_stage
    def _correlate(
        self, base: CorrelationEngine, velocity: VelocityEngine, now: datetime
    ) -> tuple[CorrelationEngine, list[CorrelationSignal]]:
        engine = base.fork()
        return engine, engine.evaluate(velocity.active_series(), now)

    def _gate_inputs(
        self,
        before: ClusterStore,
        velocity: VelocityEngine,
        events: list[ClusteredEvent],
        assignments: list[tuple[RawItem, str]],
        velocity_out: VelocityOutput,
    ) -> dict[TimeSeriesKey, GateInput]:
        inputs: dict[TimeSeriesKey, GateInput] = {}

        def input_for(key: TimeSeriesKey) -> GateInput:
            if key not in inputs:
                inputs[key] = GateInput(
                    key=key,
                    velocity=velocity.metrics(key),
                    sentiment_shift=velocity.sentiment_shift(key),
                    baseline_deviation=velocity.deviation_of(key),
                )
            return inputs[key]

        for key in velocity.anomalous_keys():
            input_for(key)

        # Source confirmations apply to the event and to every key its new members fed
        fed: dict[str, set[TimeSeriesKey]] = {}
        for item, event_id in assignments:
            fed.setdefault(event_id, set()).update(velocity_out.item_keys.get(item.id, []))

        for event in events:
            previous = before.active.get(event.id)
            added = tier1_additions(previous, event)
            crossed = diversity_crossed(previous, event)
            if not added and not crossed:
                continue
            for key in {event.key} | fed.get(event.id, set()):
                gate_input = input_for(key)
                gate_input.tier1_sources.extend(added)
                if crossed:
                    gate_input.diversity_events.append(event.id)

        return inputs

    @timed_stage
    def _gate(
        self,
        gate: AlertGate,
        inputs: dict[TimeSeriesKey, GateInput],
        correlations: list[CorrelationSignal],
        now: datetime,
    ) -> list[Alert]:
        return gate.evaluate(GateTick(now=now, inputs=inputs, correlations=correlations))

    def _persist(
        self,
        base: PipelineState,
        state: PipelineState,
        result: TickResult,
        baseline_changed: list[TimeSeriesKey],
    ) -> None:
        if self.writer is None:
            return

        current = {e.id: e.model_dump(mode="json") for e in result.events if not e.retired}
        for event_id in set(base.clusters.active) - set(state.clusters.active):
            current[event_id] = DELETE
        self.writer.stage(CURRENT_EVENTS, current)

        baselines = {}
        for key in baseline_changed:
            exported = state.velocity.baselines.export_state(key)
            if exported is not None:
                baselines[str(key)] = exported
        self.writer.stage(BASELINES, baselines)

        self.writer.stage(
            VELOCITY_HISTORY,
            {str(m.key): m.model_dump(mode="json") for m in result.velocity},
        )

        if state.tick % self.snapshot_every == 0:
            self.writer.stage(SNAPSHOTS, {"latest": self.snapshot()})

        self.writer.schedule_flush()

    async def _emit(self, result: TickResult) -> None:
        await self.sink.on_events(result.events)
        await self.sink.on_velocity(result.velocity)
        await self.sink.on_alerts(result.alerts)

    def snapshot(self) -> dict[str, Any]:
        """
        Committed state of the last completed tick as plain data.

        Reads only committed objects, so it never waits for a running tick.
        """
        state = self._state
        velocity = state.velocity
        metrics = [velocity.metrics(k) for k in velocity.keys()]
        baselines = {}
        for key in velocity.baselines.keys():
            record = velocity.baseline_of(key)
            if record is not None:
                baselines[str(key)] = record.model_dump(mode="json")

        return {
            "tick": state.tick,
            "taken_at": (state.last_tick_at or self._clock()).isoformat(),
            "events": [e.model_dump(mode="json") for e in state.clusters.active_events()],
            "velocity": [m.model_dump(mode="json") for m in metrics if m is not None],
            "baselines": baselines,
            "correlations": [c.model_dump(mode="json") for c in state.correlations],
            "alerts": [a.model_dump(mode="json") for a in state.recent_alerts],
            "gates": {k: v.value for k, v in state.gate.states().items()},
        }

    async def restore(self) -> int:
        """
        Reload current events and baseline state from the store.

        Returns:
            Number of records restored
        """
        if self.writer is None:
            return 0

        async with self._lock:
            clusters = self._state.clusters.fork()
            velocity = self._state.velocity.fork()
            clusterer = Clusterer(clusters, self.config)
            restored = 0

            for event_id, data in (await self.writer.load(CURRENT_EVENTS)).items():
                try:
                    event = ClusteredEvent.model_validate(data)
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable event {event_id}: {e.error_count()} errors")
                    continue
                if clusterer.adopt(event):
                    restored += 1

            for key_str, data in (await self.writer.load(BASELINES)).items():
                try:
                    key = TimeSeriesKey.parse(key_str)
                    velocity.baselines.import_state(key, data)
                except (ValidationError, ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping unreadable baseline {key_str}: {e}")
                    continue
                restored += 1

            self._state = PipelineState(
                clusters=clusters,
                velocity=velocity,
                correlation=self._state.correlation,
                gate=self._state.gate,
                tick=self._state.tick,
                last_tick_at=self._state.last_tick_at,
            )

        logger.info(
            f"Restored {len(clusters)} events and "
            f"{len(velocity.baselines.keys())} baselines ({restored} records)"
        )
        return restored

    async def close(self) -> None:
        if self.writer is not None:
            await self.writer.close()
