"""
IntakeBuffer - Serializes overlapping ingestion batches into one tick input.

Producers may deliver batches at any time, including while a tick runs.
Everything received between two ticks is handed to the next tick as a single
input set; items already buffered under the same id are dropped.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from radar.analysis.types import RawItem, StreamSample


@dataclass
class TickInput:
    """Items and samples drained for one tick."""

    items: list[RawItem | dict] = field(default_factory=list)
    samples: list[StreamSample | dict] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items) + len(self.samples)


class IntakeStats:
    """Statistics for the intake buffer."""

    def __init__(self):
        self.received: int = 0  # Items and samples accepted
        self.deduplicated: int = 0  # Items dropped as already buffered
        self.drained: int = 0  # Drains handed to ticks
        self.requeued: int = 0  # Records returned by abandoned ticks

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "deduplicated": self.deduplicated,
            "drained": self.drained,
            "requeued": self.requeued,
        }


def _item_id(item: RawItem | dict) -> str | None:
    if isinstance(item, RawItem):
        return item.id
    if isinstance(item, dict):
        value = item.get("id")
        return str(value) if value is not None else None
    return None


class IntakeBuffer:
    """
    Async-safe buffer between ingestion and the tick loop.

    Usage:
        buffer = IntakeBuffer()
        await buffer.submit(items=[...], samples=[...])
        tick_input = await buffer.drain()
    """

    def __init__(self):
        self._items: dict[str, RawItem | dict] = {}
        self._anonymous: list[RawItem | dict] = []
        self._samples: list[StreamSample | dict] = []
        self._lock = asyncio.Lock()
        self._stats = IntakeStats()

    async def submit(
        self,
        items: list[RawItem | dict] | None = None,
        samples: list[StreamSample | dict] | None = None,
    ) -> int:
        """Buffer a batch. Returns the number of records accepted."""
        accepted = 0
        async with self._lock:
            for item in items or []:
                item_id = _item_id(item)
                if item_id is None:
                    # Kept so the tick can reject it as malformed
                    self._anonymous.append(item)
                elif item_id in self._items:
                    self._stats.deduplicated += 1
                    continue
                else:
                    self._items[item_id] = item
                accepted += 1
            for sample in samples or []:
                self._samples.append(sample)
                accepted += 1
            self._stats.received += accepted
        return accepted

    async def drain(self) -> TickInput:
        """Take everything buffered so far."""
        async with self._lock:
            tick_input = TickInput(
                items=[*self._items.values(), *self._anonymous],
                samples=list(self._samples),
            )
            self._items.clear()
            self._anonymous.clear()
            self._samples.clear()
            if tick_input:
                self._stats.drained += 1
        return tick_input

    async def requeue(self, tick_input: TickInput) -> None:
        """Return an abandoned tick's input, ahead of anything newer."""
        async with self._lock:
            items: dict[str, RawItem | dict] = {}
            anonymous: list[RawItem | dict] = []
            for item in tick_input.items:
                item_id = _item_id(item)
                if item_id is None:
                    anonymous.append(item)
                else:
                    items.setdefault(item_id, item)
            for item_id, item in self._items.items():
                items.setdefault(item_id, item)

            self._items = items
            self._anonymous = anonymous + self._anonymous
            self._samples = list(tick_input.samples) + self._samples
            self._stats.requeued += len(tick_input)
        logger.debug(f"[intake] requeued {len(tick_input)} records from abandoned tick")

    def pending(self) -> int:
        return len(self._items) + len(self._anonymous) + len(self._samples)

    def get_stats(self) -> IntakeStats:
        return self._stats
