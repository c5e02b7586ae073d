"""
PersistenceWriter - Best-effort, non-blocking writes to the key-value store.

Writes are staged per collection and flushed in the background. A flush that
times out or fails leaves its writes pending for the next tick; restaging a
key replaces the pending value (latest wins). While a collection's breaker is
open its writes simply wait.
"""

import asyncio
from typing import Any

from loguru import logger

from radar.datastore.repositories import KeyValueStore
from radar.exceptions import StoreUnavailable
from radar.services.circuit_breaker import CircuitBreakerRegistry

# Staged value meaning "delete this key"
DELETE = None


class PersistenceWriter:
    """
    Usage:
        writer = PersistenceWriter(store, timeout=2.0)
        writer.stage("baselines", {"event:abc": {...}})
        writer.schedule_flush()        # returns immediately
        await writer.close()           # final flush on shutdown
    """

    def __init__(
        self,
        store: KeyValueStore,
        timeout: float = 2.0,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        self.store = store
        self.timeout = timeout
        self.breakers = breakers or CircuitBreakerRegistry()
        self._pending: dict[str, dict[str, Any]] = {}
        self._flush_task: asyncio.Task | None = None
        self.failed_writes = 0
        self.completed_writes = 0

    def stage(self, collection: str, values: dict[str, Any]) -> None:
        if values:
            self._pending.setdefault(collection, {}).update(values)

    def pending_count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._pending.get(collection, {}))
        return sum(len(v) for v in self._pending.values())

    @property
    def busy(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def schedule_flush(self) -> bool:
        """Start a background flush unless one is still running."""
        if not self._pending:
            return False
        if self.busy:
            logger.debug("[persist] previous flush still running, deferring writes")
            return False
        self._flush_task = asyncio.create_task(self.flush())
        return True

    async def flush(self) -> int:
        """
        Attempt every pending write once.

        Returns:
            Number of keys written
        """
        written = 0
        for collection in list(self._pending):
            batch = dict(self._pending.get(collection, {}))
            if not batch:
                continue

            breaker = self.breakers.get(collection)
            if not breaker.can_request():
                logger.debug(f"[persist] '{collection}' circuit open, {len(batch)} writes waiting")
                continue

            try:
                await asyncio.wait_for(self._write(collection, batch), self.timeout)
            except (StoreUnavailable, asyncio.TimeoutError) as e:
                breaker.record_failure()
                self.failed_writes += 1
                reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
                logger.warning(
                    f"[persist] write to '{collection}' failed ({reason}); "
                    f"{len(batch)} keys retried next tick"
                )
                continue

            breaker.record_success()
            self.completed_writes += 1
            written += len(batch)

            # Keys restaged during the write stay pending with their newer value
            current = self._pending.get(collection, {})
            for key, value in batch.items():
                if key in current and current[key] is value:
                    del current[key]
            if not current:
                self._pending.pop(collection, None)

        if written:
            logger.debug(f"[persist] flushed {written} keys")
        return written

    async def _write(self, collection: str, batch: dict[str, Any]) -> None:
        puts = {k: v for k, v in batch.items() if v is not DELETE}
        if puts:
            await self.store.put_many(collection, puts)
        for key, value in batch.items():
            if value is DELETE:
                await self.store.delete(collection, key)

    async def load(self, collection: str) -> dict[str, Any]:
        """Read a whole collection; an unavailable store yields nothing."""
        try:
            return await asyncio.wait_for(self.store.load_all(collection), self.timeout)
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            logger.warning(f"[persist] could not load '{collection}': {reason}")
            return {}

    async def close(self) -> None:
        if self._flush_task is not None:
            await asyncio.gather(self._flush_task, return_exceptions=True)
        await self.flush()
