"""
TickScheduler - runs pipeline ticks on a fixed cadence.

Ticks run as tasks so a forced refresh can abandon the one in flight; the
pipeline guarantees an abandoned tick leaves the last committed state.
"""

import asyncio
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from radar.analysis.types import TickResult
from radar.services.pipeline import SignalPipeline


class TickScheduler:
    """
    Usage:
        scheduler = TickScheduler(pipeline, interval_seconds=30)
        scheduler.start()
        result = await scheduler.refresh_now()
        scheduler.stop()
    """

    def __init__(self, pipeline: SignalPipeline, interval_seconds: int = 30):
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.scheduler = AsyncIOScheduler()
        self._is_running = False
        self._current: asyncio.Task | None = None
        self.completed_ticks = 0
        self.abandoned_ticks = 0

    async def _run_tick(self) -> TickResult | None:
        task = asyncio.create_task(self.pipeline.tick())
        self._current = task
        try:
            await asyncio.wait({task})
        finally:
            if self._current is task:
                self._current = None

        if task.cancelled():
            self.abandoned_ticks += 1
            return None
        if task.exception() is not None:
            logger.error(f"Tick failed: {task.exception()}")
            return None
        self.completed_ticks += 1
        return task.result()

    async def _tick_job(self) -> None:
        await self._run_tick()

    async def refresh_now(self) -> TickResult | None:
        """Abandon any tick in progress and run a fresh one immediately."""
        in_flight = self._current
        if in_flight is not None and not in_flight.done():
            logger.info("Forced refresh: abandoning tick in progress")
            in_flight.cancel()
            await asyncio.wait({in_flight})
        return await self._run_tick()

    def start(self) -> None:
        if self._is_running:
            logger.warning("TickScheduler is already running")
            return

        self.scheduler.add_job(
            self._tick_job,
            trigger="interval",
            seconds=self.interval_seconds,
            id="radar_tick",
            name="Signal Pipeline Tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"TickScheduler started (every {self.interval_seconds}s)")

    def stop(self) -> None:
        if not self._is_running:
            return
        self.scheduler.shutdown(wait=False)
        if self._current is not None and not self._current.done():
            self._current.cancel()
        self._is_running = False
        logger.info("TickScheduler stopped")

    def get_status(self) -> dict[str, Any]:
        jobs = []
        if self._is_running:
            for job in self.scheduler.get_jobs():
                next_run = job.next_run_time
                jobs.append(
                    {
                        "id": job.id,
                        "name": job.name,
                        "next_run": next_run.isoformat() if next_run else None,
                    }
                )
        return {
            "running": self._is_running,
            "jobs": jobs,
            "tick_in_progress": self._current is not None and not self._current.done(),
            "completed_ticks": self.completed_ticks,
            "abandoned_ticks": self.abandoned_ticks,
            "pending_intake": self.pipeline.intake.pending(),
        }
