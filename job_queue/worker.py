"""
Worker Pool — claims jobs from one queue and runs its handler.

One pool per queue, each bounded by an asyncio.Semaphore sized to the
queue's concurrency. The scheduler task only claims a job when a slot is
free, so a slow queue never starves another one and rate-limited providers
never see more than `concurrency` calls from this process.

Per-job state machine:
  waiting ──claim──▶ active ──ok──▶ completed
                       │
                       └─error/timeout─▶ delayed (backoff) ──▶ waiting ...
                                        └─ attempts exhausted ──▶ failed

Handlers must be idempotent under at-least-once delivery. JobContext.run_once
guards side effects (email, CRM, credits) per job id across retries.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from job_queue.dispatch import Dispatcher, DispatchResult
from job_queue.errors import HandlerTimeoutError
from job_queue.message_queue import MessageQueue
from job_queue.registry import QueueRegistry
from models.schemas import (
    Job, JobState, ProgressEvent, ProgressEventType, QueuePolicy,
)

logger = structlog.get_logger()

Handler = Callable[["JobContext"], Awaitable[Any]]
FailureHook = Callable[[Job], Awaitable[None]]


class JobContext:
    """What a handler sees: the job, its policy, a bound logger and progress reporting."""

    def __init__(
        self,
        job: Job,
        policy: QueuePolicy,
        broker: MessageQueue,
        bridge=None,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.job = job
        self.policy = policy
        self.broker = broker
        self.bridge = bridge
        self.dispatcher = dispatcher
        self.completion_message = ""
        self.log = logger.bind(job_id=job.id, queue=job.queue_name, attempt=job.attempts_made + 1)

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    async def publish(self, kind: ProgressEventType, status: str, progress: int,
                      message: str = "", **extra) -> None:
        brand_id = self.job.brand_id
        if self.bridge is None or not brand_id:
            return
        event = ProgressEvent(
            job_id=self.job.id, brand_id=brand_id,
            status=status, progress=progress, message=message, **extra,
        )
        await self.bridge.publish(event, kind)

    async def progress(self, progress: int, message: str = "", status: str = "running") -> None:
        await self.publish(ProgressEventType.PROGRESS, status, progress, message)

    async def dispatch(self, queue_name: str, payload: dict[str, Any], **options) -> DispatchResult:
        if self.dispatcher is None:
            raise RuntimeError("JobContext has no dispatcher")
        return await self.dispatcher.dispatch(queue_name, payload, **options)

    async def run_once(self, effect: str, fn: Callable[[], Awaitable[Any]]) -> Optional[Any]:
        """
        Run `fn` at most once for this job id. Returns None when a previous
        attempt already performed the effect. If `fn` raises, the claim is
        released so the next attempt can try again. A cancelled `fn` (timeout,
        shutdown) may already have performed the effect, so its claim is kept.
        """
        if not await self.broker.claim_side_effect(self.job.id, effect):
            self.log.info("side_effect_skipped", effect=effect)
            return None
        try:
            return await fn()
        except Exception:
            await self.broker.release_side_effect(self.job.id, effect)
            raise


class WorkerPool:
    """
    Runs up to `policy.concurrency` handlers for one queue.

    Usage:
        pool = WorkerPool(policy, broker, handler, bridge=bridge)
        await pool.start()
        await pool.stop()      # stop claiming, drain in-flight handlers
    """

    def __init__(
        self,
        policy: QueuePolicy,
        broker: MessageQueue,
        handler: Handler,
        bridge=None,
        dispatcher: Optional[Dispatcher] = None,
        poll_interval: float = 1.0,
    ):
        self.policy = policy
        self.queue_name = policy.name
        self.broker = broker
        self.handler = handler
        self.bridge = bridge
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self._slots = asyncio.Semaphore(policy.concurrency)
        self._inflight: set[asyncio.Task] = set()
        self._failure_hooks: list[FailureHook] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.active_count = 0
        self.processed = 0
        self.failed = 0

    def add_failure_hook(self, hook: FailureHook) -> None:
        """Called once per job that reaches the terminal failed state."""
        self._failure_hooks.append(hook)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> asyncio.Task:
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"worker:{self.queue_name}")
        logger.info("worker_pool_started", queue=self.queue_name, concurrency=self.policy.concurrency)
        return self._task

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop claiming, then wait for in-flight handlers (bounded by their timeout)."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            wait_for = grace if grace is not None else self.policy.timeout
            done, pending = await asyncio.wait(set(self._inflight), timeout=wait_for)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("worker_pool_stopped", queue=self.queue_name, processed=self.processed)

    async def _run(self) -> None:
        while self._running:
            await self._slots.acquire()
            try:
                job = await self.broker.claim(self.queue_name, timeout=self.poll_interval)
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except Exception as e:
                self._slots.release()
                logger.error("worker_claim_error", queue=self.queue_name, error=str(e))
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                self._slots.release()
                continue

            task = asyncio.create_task(self._execute(job), name=f"job:{job.id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _execute(self, job: Job) -> None:
        ctx = JobContext(job, self.policy, self.broker, self.bridge, self.dispatcher)
        self.active_count += 1
        ctx.log.info("job_started")
        try:
            result, error = None, None
            try:
                try:
                    result = await asyncio.wait_for(self.handler(ctx), timeout=self.policy.timeout)
                except asyncio.TimeoutError as e:
                    raise HandlerTimeoutError(self.queue_name, job.id, self.policy.timeout) from e
            except asyncio.CancelledError:
                # shutdown mid-job: left active for stalled-job recovery
                ctx.log.warning("job_interrupted")
                raise
            except Exception as e:
                error = e

            try:
                if error is None:
                    await self._on_success(ctx, result)
                else:
                    await self._on_failure(ctx, error)
            except Exception as e:
                # job stays active; stalled-job recovery picks it up again
                ctx.log.error("job_bookkeeping_failed",
                              outcome="failed" if error is not None else "completed",
                              handler_error=str(error) if error is not None else None,
                              error=str(e))
        finally:
            self.active_count -= 1
            self._slots.release()

    async def _on_success(self, ctx: JobContext, result: Any) -> None:
        job = ctx.job
        await self.broker.complete(job, result)
        self.processed += 1
        ctx.log.info("job_completed")
        await self._prune(JobState.COMPLETED)
        await ctx.publish(
            ProgressEventType.COMPLETE, "complete", 100,
            ctx.completion_message or "Done!", result=result,
        )

    async def _on_failure(self, ctx: JobContext, error: Exception) -> None:
        job = ctx.job
        job.attempts_made += 1
        reason = str(error) or type(error).__name__
        retryable = getattr(error, "retryable", True)
        attempts = self.policy.retry.attempts

        if retryable and job.attempts_made < attempts:
            delay = self.policy.retry.delay_for(job.attempts_made)
            await self.broker.retry(job, delay, reason)
            ctx.log.warning("job_retry_scheduled",
                            error=reason,
                            attempts_made=job.attempts_made,
                            delay=delay)
            await ctx.publish(
                ProgressEventType.FAILED, "retrying", 0,
                "Something went wrong, trying again...",
                error=reason, retries_left=attempts - job.attempts_made,
            )
            return

        await self.broker.fail(job, reason)
        self.failed += 1
        ctx.log.error("job_failed", error=reason, attempts_made=job.attempts_made)
        await self._prune(JobState.FAILED)
        await ctx.publish(
            ProgressEventType.FAILED, "failed", 0,
            "We couldn't finish this one. Please try again.",
            error=reason, retries_left=0,
        )
        for hook in self._failure_hooks:
            try:
                await hook(job)
            except Exception as e:
                ctx.log.error("failure_hook_error", hook=getattr(hook, "__name__", repr(hook)), error=str(e))

    async def _prune(self, state: JobState) -> None:
        rule = self.policy.retention.completed if state == JobState.COMPLETED else self.policy.retention.failed
        try:
            await self.broker.prune(self.queue_name, state, rule)
        except Exception as e:
            logger.warning("retention_prune_failed", queue=self.queue_name, error=str(e))


class WorkerManager:
    """
    One WorkerPool per queue that has a handler.

    Usage:
        manager = WorkerManager(registry, broker, handlers, bridge=bridge, dispatcher=dispatcher)
        await manager.start()
        await manager.stop()
    """

    def __init__(
        self,
        registry: QueueRegistry,
        broker: MessageQueue,
        handlers: dict[str, Handler],
        bridge=None,
        dispatcher: Optional[Dispatcher] = None,
        poll_interval: float = 1.0,
        queues: Optional[list[str]] = None,
    ):
        self.registry = registry
        self.pools: dict[str, WorkerPool] = {}
        selected = queues or registry.list_names()
        for name in selected:
            policy = registry.lookup(name)
            handler = handlers.get(name)
            if handler is None:
                logger.warning("queue_without_handler", queue=name)
                continue
            self.pools[name] = WorkerPool(
                policy, broker, handler,
                bridge=bridge, dispatcher=dispatcher, poll_interval=poll_interval,
            )

    def add_failure_hook(self, hook: FailureHook, queues: Optional[list[str]] = None) -> None:
        for name, pool in self.pools.items():
            if queues is None or name in queues:
                pool.add_failure_hook(hook)

    async def start(self) -> None:
        for pool in self.pools.values():
            await pool.start()
        logger.info("workers_started", count=len(self.pools))

    async def stop(self, grace: Optional[float] = None) -> None:
        await asyncio.gather(*(pool.stop(grace) for pool in self.pools.values()))
        logger.info("workers_stopped")
