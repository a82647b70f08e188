"""
Recurring Job Scheduler — self-scheduling maintenance inside the job system.

Each recurring job fires once per interval slot. The job id is derived from
the slot (`{key}:{slot}`), so every process may run a scheduler and the
broker's deduplication keeps exactly one job per slot.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from job_queue.dispatch import Dispatcher, DispatchResult
from job_queue.errors import JobQueueError
from job_queue.registry import Queues

logger = structlog.get_logger()


@dataclass(frozen=True)
class RecurringJob:
    key: str
    queue_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    every_seconds: float = 3600

    def slot(self, now: float) -> int:
        return int(now // self.every_seconds)

    def job_id(self, now: float) -> str:
        return f"{self.key}:{self.slot(now)}"


DEFAULT_RECURRING_JOBS: tuple[RecurringJob, ...] = (
    RecurringJob("recurring-cleanup", Queues.CLEANUP, {"type": "expired-jobs"}, 3600),
    RecurringJob("recurring-stalled-check", Queues.CLEANUP, {"type": "stalled-jobs"}, 300),
    RecurringJob("recurring-abandonment-detection", Queues.CLEANUP, {"type": "detect-abandonment"}, 3600),
)


class RecurringJobScheduler:
    """
    Usage:
        scheduler = RecurringJobScheduler(dispatcher)
        await scheduler.ensure_scheduled()   # once at startup
        await scheduler.start()              # keep scheduling every tick
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        jobs: tuple[RecurringJob, ...] = DEFAULT_RECURRING_JOBS,
        tick_seconds: float = 30,
    ):
        self.dispatcher = dispatcher
        self.jobs = tuple(jobs)
        self.tick_seconds = tick_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def ensure_scheduled(self, now: Optional[float] = None) -> list[DispatchResult]:
        now = time.time() if now is None else now
        results = []
        for job in self.jobs:
            try:
                result = await self.dispatcher.dispatch(job.queue_name, job.payload, job_id=job.job_id(now))
            except JobQueueError as e:
                logger.error("recurring_job_dispatch_failed", key=job.key, error=str(e))
                continue
            results.append(result)
            if not result.deduplicated:
                logger.info("recurring_job_scheduled", key=job.key, job_id=result.job_id)
        return results

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="recurring_scheduler")
        logger.info("recurring_scheduler_started", jobs=[j.key for j in self.jobs])

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("recurring_scheduler_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.ensure_scheduled()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("recurring_scheduler_error", error=str(e))
            await asyncio.sleep(self.tick_seconds)
