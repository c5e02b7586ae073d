"""
Ingestion adapter interface.

Adapters hand the pipeline normalized news items and market/price samples.
Fetching and parsing of any concrete source lives outside this package.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from radar.analysis.types import RawItem, StreamSample
from radar.exceptions import MalformedInput


def parse_payload(model: type[BaseModel], payload: Any) -> BaseModel:
    """Validate a raw payload into `model`, raising MalformedInput on failure."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        ident = payload.get("id") if isinstance(payload, dict) else None
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedInput(f"Invalid {model.__name__}: {fields}", key=ident) from e


class IngestionAdapter(ABC):
    """
    Abstract base class for all ingestion adapters.

    Adapters should:
    - Return Pydantic models (or dicts that validate into them)
    - Tolerate being polled when nothing is new
    - Never raise for a single bad record
    """

    @property
    @abstractmethod
    def adapter_id(self) -> str:
        """Unique identifier for this adapter."""
        ...

    @abstractmethod
    async def fetch_items(self) -> list[RawItem | dict]:
        """News items received since the last call."""
        ...

    @abstractmethod
    async def fetch_samples(self) -> list[StreamSample | dict]:
        """Market and price samples received since the last call."""
        ...


class QueueAdapter(IngestionAdapter):
    """
    In-memory adapter fed by producers calling `put_item` / `put_sample`.

    Usage:
        adapter = QueueAdapter()
        adapter.put_item({"id": "a1", "source_name": "Reuters", ...})
        items = await adapter.fetch_items()
    """

    def __init__(self, name: str = "queue"):
        self._name = name
        self._items: asyncio.Queue = asyncio.Queue()
        self._samples: asyncio.Queue = asyncio.Queue()

    @property
    def adapter_id(self) -> str:
        return self._name

    def put_item(self, item: RawItem | dict) -> None:
        self._items.put_nowait(item)

    def put_sample(self, sample: StreamSample | dict) -> None:
        self._samples.put_nowait(sample)

    @staticmethod
    def _drain(queue: asyncio.Queue) -> list:
        drained = []
        while True:
            try:
                drained.append(queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return drained

    async def fetch_items(self) -> list[RawItem | dict]:
        items = self._drain(self._items)
        if items:
            logger.debug(f"[{self._name}] {len(items)} items drained")
        return items

    async def fetch_samples(self) -> list[StreamSample | dict]:
        samples = self._drain(self._samples)
        if samples:
            logger.debug(f"[{self._name}] {len(samples)} samples drained")
        return samples
