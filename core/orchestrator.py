"""
JobSystem — wires the job orchestration core together.

Architecture:
  Producers:  dispatch() / dispatch_paid()
              → QueueRegistry lookup → SchemaValidator → broker enqueue

  Workers:    WorkerManager → one WorkerPool per queue
              → handler(JobContext) → ProgressBridge → brand/job rooms
              → terminal failure hooks (credit refund, job record)

  Recurring:  RecurringJobScheduler → cleanup queue
              → expired-jobs / stalled-jobs / detect-abandonment

Every collaborator can be injected, so tests run the whole system on the
in-memory backends.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from abandonment.detector import AbandonmentDetector
from abandonment.tokens import ResumeTokenSigner
from backend.connector import Connectors, create_connectors
from config.settings import Settings, get_settings
from credits.gate import QUEUE_CREDIT_TYPES, CreditGate
from credits.store import CreditStore, create_credit_store
from database.store_base import BaseBrandStore
from database.store_factory import create_store
from job_queue.dispatch import Dispatcher, DispatchResult
from job_queue.message_queue import MessageQueue, create_message_queue
from job_queue.registry import QueueRegistry, build_default_registry
from job_queue.scheduler import DEFAULT_RECURRING_JOBS, RecurringJobScheduler
from job_queue.schemas import SchemaValidator
from job_queue.worker import Handler, WorkerManager
from models.schemas import Job, JobRecord
from progress.bridge import ProgressBridge
from progress.relay import RedisProgressRelay
from workers import HandlerDeps, build_handlers

logger = structlog.get_logger()


class JobSystem:
    """
    Usage:
        system = JobSystem()
        await system.start()                      # workers + recurring jobs
        await system.dispatch("email-send", {...})
        await system.dispatch_paid("logo-generation", {...})
        await system.stop()

    An API-only process calls start(run_workers=False, schedule=False).
    """

    def __init__(
        self,
        settings: Settings = None,
        *,
        registry: QueueRegistry = None,
        broker: MessageQueue = None,
        store: BaseBrandStore = None,
        credit_store: CreditStore = None,
        connectors: Connectors = None,
        bridge: ProgressBridge = None,
        handlers: dict[str, Handler] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.registry = registry or build_default_registry()
        self.broker = broker or create_message_queue({
            "backend": s.queue.backend,
            "redis_url": s.queue.redis_url,
            "key_prefix": s.queue.key_prefix,
        })
        self.validator = SchemaValidator.for_registry(self.registry)
        self.dispatcher = Dispatcher(self.registry, self.broker, self.validator)

        self.relay: Optional[RedisProgressRelay] = None
        if bridge is None and s.progress.relay == "redis":
            self.relay = RedisProgressRelay(s.progress.redis_url, s.progress.channel)
        self.bridge = bridge or ProgressBridge(relay=self.relay, subscriber_buffer=s.progress.subscriber_buffer)

        self.credit_store = credit_store or create_credit_store({
            "backend": s.credits.backend,
            "redis_url": s.credits.redis_url,
            "initial_balances": s.credits.initial_balances,
        })
        self.credits = CreditGate(self.credit_store, broker=self.broker)

        self.store = store or create_store({"store_backend": s.database.store_backend})
        self.connectors = connectors or create_connectors(s.integrations)

        self.signer = ResumeTokenSigner(s.abandonment.resume_token_secret, s.abandonment.token_ttl_seconds)
        self.detector = AbandonmentDetector(
            self.store, self.dispatcher, self.signer,
            app_url=s.abandonment.app_url,
            inactivity_seconds=s.abandonment.inactivity_seconds,
            batch_limit=s.abandonment.batch_limit,
        )

        self.handlers = handlers or build_handlers(HandlerDeps(
            store=self.store,
            connectors=self.connectors,
            broker=self.broker,
            registry=self.registry,
            detector=self.detector,
            app_url=s.abandonment.app_url,
        ))
        self.scheduler = RecurringJobScheduler(
            self.dispatcher, DEFAULT_RECURRING_JOBS, tick_seconds=s.queue.scheduler_tick,
        )
        self.workers: Optional[WorkerManager] = None
        self._started = False

    # ── Producers ─────────────────────────────────────────────

    async def dispatch(self, queue_name: str, payload: dict[str, Any], **options) -> DispatchResult:
        return await self.dispatcher.dispatch(queue_name, payload, **options)

    async def dispatch_paid(self, queue_name: str, payload: dict[str, Any],
                            cost: Optional[int] = None, **options) -> DispatchResult:
        return await self.credits.dispatch_paid(self.dispatcher, queue_name, payload, cost=cost, **options)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(
        self,
        queues: Optional[list[str]] = None,
        run_workers: bool = True,
        schedule: Optional[bool] = None,
    ) -> None:
        await self.broker.connect()
        if self.relay is not None:
            await self.relay.start(self.bridge)

        if run_workers:
            self.workers = WorkerManager(
                self.registry, self.broker, self.handlers,
                bridge=self.bridge,
                dispatcher=self.dispatcher,
                poll_interval=self.settings.queue.poll_interval,
                queues=queues or self.settings.queue.queues or None,
            )
            self.workers.add_failure_hook(self.credits.refund_failed_job, queues=list(QUEUE_CREDIT_TYPES))
            self.workers.add_failure_hook(self.record_failed_job)
            await self.workers.start()

        if self.settings.queue.schedule_recurring if schedule is None else schedule:
            await self.scheduler.ensure_scheduled()
            await self.scheduler.start()

        self._started = True
        logger.info("job_system_started",
                    workers=len(self.workers.pools) if self.workers else 0,
                    broker=self.settings.queue.backend)

    async def stop(self, grace: Optional[float] = None) -> None:
        if not self._started:
            return
        grace = self.settings.queue.shutdown_grace if grace is None else grace
        await self.scheduler.stop()
        if self.workers is not None:
            await self.workers.stop(grace)
        if self.relay is not None:
            await self.relay.stop()
        await self.bridge.close()
        await self.connectors.close()
        await self.credit_store.close()
        await self.broker.close()
        self._started = False
        logger.info("job_system_stopped")

    # ── Failure hooks ─────────────────────────────────────────

    async def record_failed_job(self, job: Job) -> None:
        await self.store.save_job_record(JobRecord(
            job_id=job.id,
            queue_name=job.queue_name,
            brand_id=job.brand_id,
            status="failed",
            error=job.failed_reason,
        ))

    async def run_abandonment_scan(self) -> dict[str, Any]:
        """One detector pass outside the recurring schedule (ops scripts)."""
        report = await self.detector.run()
        return report.to_dict()
