"""
Cleanup handler — recurring maintenance on the `cleanup` queue.

  expired-jobs        apply every queue's retention policy
  stalled-jobs        requeue jobs left active past their timeout (crashed workers)
  detect-abandonment  run the abandonment detector
"""
from __future__ import annotations

from typing import Any

from job_queue.errors import HandlerError
from job_queue.worker import JobContext
from models.schemas import JobState
from workers import HandlerDeps

# extra time past a queue's timeout before an active job counts as stalled
STALL_GRACE_SECONDS = 60


class CleanupHandler:

    def __init__(self, deps: HandlerDeps):
        self.broker = deps.broker
        self.registry = deps.registry
        self.detector = deps.detector
        self._tasks = {
            "expired-jobs": self.clean_expired_jobs,
            "stalled-jobs": self.requeue_stalled_jobs,
            "detect-abandonment": self.detect_abandonment,
        }

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        cleanup_type = ctx.payload["type"]
        task = self._tasks.get(cleanup_type)
        if task is None:
            raise HandlerError(f"Unknown cleanup type: {cleanup_type}", retryable=False)
        ctx.log.info("cleanup_started", type=cleanup_type)
        result = await task()
        ctx.log.info("cleanup_complete", type=cleanup_type, result=result)
        return result

    async def clean_expired_jobs(self) -> dict[str, Any]:
        removed = {}
        for policy in self.registry:
            completed = await self.broker.prune(policy.name, JobState.COMPLETED, policy.retention.completed)
            failed = await self.broker.prune(policy.name, JobState.FAILED, policy.retention.failed)
            if completed or failed:
                removed[policy.name] = completed + failed
        return {"cleaned": sum(removed.values()), "by_queue": removed}

    async def requeue_stalled_jobs(self) -> dict[str, Any]:
        requeued = {}
        for policy in self.registry:
            moved = await self.broker.requeue_stalled(policy.name, policy.timeout + STALL_GRACE_SECONDS)
            if moved:
                requeued[policy.name] = moved
        return {"requeued": sum(requeued.values()), "by_queue": requeued}

    async def detect_abandonment(self) -> dict[str, Any]:
        if self.detector is None:
            raise HandlerError("Abandonment detector is not configured", retryable=False)
        report = await self.detector.run()
        return report.to_dict()
