"""
Dispatcher — the public entry point for enqueuing work.

Flow:
  1. Look up the queue policy          (UnknownQueueError)
  2. Validate the payload              (ValidationError, field-level detail)
  3. Derive the job id                 (caller-supplied for deduplication)
  4. Enqueue with priority / delay     (returns once the broker has the job)
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import structlog

from job_queue.message_queue import MessageQueue
from job_queue.registry import QueueRegistry
from job_queue.schemas import SchemaValidator
from models.schemas import Job, JobOrigin, JobState, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class DispatchResult:
    job_id: str
    queue_name: str
    deduplicated: bool = False


class Dispatcher:
    """
    Validates and enqueues jobs.

    Usage:
        dispatcher = Dispatcher(registry, broker)
        result = await dispatcher.dispatch("email-send", {...})
        result = await dispatcher.dispatch("crm-sync", {...}, job_id="abandon-crm-123")
    """

    def __init__(
        self,
        registry: QueueRegistry,
        broker: MessageQueue,
        validator: SchemaValidator = None,
    ):
        self.registry = registry
        self.broker = broker
        self.validator = validator or SchemaValidator.for_registry(registry)

    async def dispatch(
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
        job_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> DispatchResult:
        policy = self.registry.lookup(queue_name)
        data = self.validator.validate(queue_name, payload)

        job = Job(
            id=job_id or f"{queue_name}-{uuid.uuid4()}",
            queue_name=queue_name,
            payload=data,
            priority=priority if priority is not None else policy.priority,
            enqueued_by=JobOrigin(user_id=data.get("user_id"), brand_id=data.get("brand_id")),
            meta=dict(meta or {}),
        )
        if delay and delay > 0:
            job.state = JobState.DELAYED
            job.run_at = utcnow() + timedelta(seconds=delay)

        stored, created = await self.broker.add(job)

        if not created:
            logger.info("job_deduplicated",
                        job_id=stored.id,
                        queue=queue_name,
                        state=stored.state.value)
            return DispatchResult(job_id=stored.id, queue_name=queue_name, deduplicated=True)

        logger.info("job_dispatched",
                    job_id=stored.id,
                    queue=queue_name,
                    user_id=data.get("user_id"),
                    brand_id=data.get("brand_id"),
                    priority=stored.priority,
                    delay=delay or 0)
        return DispatchResult(job_id=stored.id, queue_name=queue_name)
