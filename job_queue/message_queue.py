"""
Message Queue — Abstract broker interface with Redis and in-memory backends.

Per-queue topology (Redis key prefix "bq"):
  bq:{queue}:job:{id}     — JSON-serialized Job (SET NX gives deduplication)
  bq:{queue}:wait         — sorted set, score = priority * 1e12 + sequence
  bq:{queue}:delayed      — sorted set, score = eligibility time (ms)
  bq:{queue}:active       — sorted set, score = claim time (ms)
  bq:{queue}:completed    — sorted set, score = finish time (ms)
  bq:{queue}:failed       — sorted set, score = finish time (ms)
  bq:effect:{job}:{name}  — at-most-once side-effect markers

Ordering: within a queue, lower priority number first, FIFO among equals.
Delayed jobs are promoted to the wait set once due and then compete normally.
Delivery is at-least-once: a job claimed by a crashed worker stays active
until requeue_stalled() moves it back to waiting.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from models.schemas import Job, JobState, RetentionRule, utcnow

logger = structlog.get_logger()

PRIORITY_SPAN = 1_000_000_000_000


def _ts(dt: Optional[datetime]) -> float:
    return dt.timestamp() if dt else time.time()


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract broker interface."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the broker backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def add(self, job: Job) -> tuple[Job, bool]:
        """
        Durably enqueue a job. Returns (job, created). When a job with the
        same id is still retained in the queue, nothing is enqueued and the
        existing job is returned with created=False.
        """
        ...

    @abstractmethod
    async def claim(self, queue: str, timeout: float = 1.0) -> Optional[Job]:
        """Move the most urgent eligible job to active and return it, or None on timeout."""
        ...

    @abstractmethod
    async def complete(self, job: Job, result: Any = None) -> Job:
        ...

    @abstractmethod
    async def retry(self, job: Job, delay: float, reason: str) -> Job:
        """Re-queue a failed attempt after `delay` seconds."""
        ...

    @abstractmethod
    async def fail(self, job: Job, reason: str) -> Job:
        """Terminally fail a job."""
        ...

    @abstractmethod
    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, queue: str, state: JobState, limit: int = 50) -> list[Job]:
        ...

    @abstractmethod
    async def counts(self, queue: str) -> dict[str, int]:
        """Number of jobs per state."""
        ...

    @abstractmethod
    async def promote_delayed(self, queue: str) -> int:
        """Move delayed jobs whose run_at has arrived to waiting."""
        ...

    @abstractmethod
    async def prune(self, queue: str, state: JobState, rule: RetentionRule) -> int:
        """Drop completed/failed jobs beyond the retention count or age."""
        ...

    @abstractmethod
    async def requeue_stalled(self, queue: str, older_than: float) -> int:
        """Move jobs active for more than `older_than` seconds back to waiting."""
        ...

    @abstractmethod
    async def claim_side_effect(self, job_id: str, effect: str, ttl: float = 7 * 86_400) -> bool:
        """True the first time (job_id, effect) is claimed, False afterwards."""
        ...

    @abstractmethod
    async def release_side_effect(self, job_id: str, effect: str) -> None:
        """Forget a claim whose effect did not happen, so a retry may perform it."""
        ...

    async def count(self, queue: str, state: Optional[JobState] = None) -> int:
        counts = await self.counts(queue)
        if state is not None:
            return counts.get(state.value, 0)
        return sum(counts.values())


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production broker backed by Redis sorted sets.

    - Wait set ordered by (priority, enqueue sequence); claim uses BZPOPMIN
    - Delayed set scored by eligibility time; promoted on every claim
    - ZREM decides which process wins a promotion or a stalled requeue
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "bq"):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=50,
        )
        await self._redis.ping()
        logger.info("redis_broker_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ── Keys ──────────────────────────────────────────────────

    def _key(self, queue: str, part: str) -> str:
        return f"{self._prefix}:{queue}:{part}"

    def _job_key(self, queue: str, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    def _state_key(self, queue: str, state: JobState) -> str:
        return self._key(queue, {
            JobState.WAITING: "wait",
            JobState.DELAYED: "delayed",
            JobState.ACTIVE: "active",
            JobState.COMPLETED: "completed",
            JobState.FAILED: "failed",
        }[state])

    async def _wait_score(self, job: Job) -> float:
        seq = await self._redis.incr(self._key(job.queue_name, "seq"))
        return job.priority * PRIORITY_SPAN + seq

    async def _save(self, job: Job) -> None:
        await self._redis.set(self._job_key(job.queue_name, job.id), job.model_dump_json())

    async def _load(self, queue: str, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._job_key(queue, job_id))
        return Job.model_validate_json(raw) if raw else None

    # ── Operations ────────────────────────────────────────────

    async def add(self, job: Job) -> tuple[Job, bool]:
        created = await self._redis.set(
            self._job_key(job.queue_name, job.id), job.model_dump_json(), nx=True,
        )
        if not created:
            existing = await self._load(job.queue_name, job.id)
            return existing or job, False

        if job.state == JobState.DELAYED:
            await self._redis.zadd(
                self._state_key(job.queue_name, JobState.DELAYED),
                {job.id: _ts(job.run_at) * 1000},
            )
        else:
            score = await self._wait_score(job)
            await self._redis.zadd(self._state_key(job.queue_name, JobState.WAITING), {job.id: score})
        return job, True

    async def claim(self, queue: str, timeout: float = 1.0) -> Optional[Job]:
        await self.promote_delayed(queue)
        popped = await self._redis.bzpopmin(self._state_key(queue, JobState.WAITING), timeout=timeout)
        if not popped:
            return None
        _, job_id, _ = popped
        job = await self._load(queue, job_id)
        if job is None:
            # pruned or deleted while waiting
            return None
        job.state = JobState.ACTIVE
        job.started_at = utcnow()
        await self._save(job)
        await self._redis.zadd(self._state_key(queue, JobState.ACTIVE), {job.id: time.time() * 1000})
        return job

    async def _finish(self, job: Job, state: JobState) -> Job:
        job.state = state
        job.finished_at = utcnow()
        pipe = self._redis.pipeline()
        pipe.set(self._job_key(job.queue_name, job.id), job.model_dump_json())
        pipe.zrem(self._state_key(job.queue_name, JobState.ACTIVE), job.id)
        pipe.zadd(self._state_key(job.queue_name, state), {job.id: _ts(job.finished_at) * 1000})
        await pipe.execute()
        return job

    async def complete(self, job: Job, result: Any = None) -> Job:
        job.result = result
        return await self._finish(job, JobState.COMPLETED)

    async def fail(self, job: Job, reason: str) -> Job:
        job.failed_reason = reason
        return await self._finish(job, JobState.FAILED)

    async def retry(self, job: Job, delay: float, reason: str) -> Job:
        job.failed_reason = reason
        job.started_at = None
        await self._redis.zrem(self._state_key(job.queue_name, JobState.ACTIVE), job.id)
        if delay > 0:
            job.state = JobState.DELAYED
            job.run_at = utcnow() + timedelta(seconds=delay)
            await self._save(job)
            await self._redis.zadd(
                self._state_key(job.queue_name, JobState.DELAYED), {job.id: _ts(job.run_at) * 1000},
            )
        else:
            job.state = JobState.WAITING
            job.run_at = None
            await self._save(job)
            score = await self._wait_score(job)
            await self._redis.zadd(self._state_key(job.queue_name, JobState.WAITING), {job.id: score})
        return job

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        return await self._load(queue, job_id)

    async def list_jobs(self, queue: str, state: JobState, limit: int = 50) -> list[Job]:
        ids = await self._redis.zrange(self._state_key(queue, state), 0, limit - 1)
        jobs = []
        for job_id in ids:
            job = await self._load(queue, job_id)
            if job:
                jobs.append(job)
        return jobs

    async def counts(self, queue: str) -> dict[str, int]:
        pipe = self._redis.pipeline()
        for state in JobState:
            pipe.zcard(self._state_key(queue, state))
        results = await pipe.execute()
        return {state.value: int(n) for state, n in zip(JobState, results)}

    async def promote_delayed(self, queue: str) -> int:
        now_ms = time.time() * 1000
        due = await self._redis.zrangebyscore(self._state_key(queue, JobState.DELAYED), "-inf", now_ms)
        promoted = 0
        for job_id in due:
            # ZREM returns 1 for exactly one contender
            if not await self._redis.zrem(self._state_key(queue, JobState.DELAYED), job_id):
                continue
            job = await self._load(queue, job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            await self._save(job)
            score = await self._wait_score(job)
            await self._redis.zadd(self._state_key(queue, JobState.WAITING), {job_id: score})
            promoted += 1
        if promoted:
            logger.debug("delayed_jobs_promoted", queue=queue, count=promoted)
        return promoted

    async def prune(self, queue: str, state: JobState, rule: RetentionRule) -> int:
        key = self._state_key(queue, state)
        cutoff_ms = (time.time() - rule.age) * 1000
        expired = await self._redis.zrangebyscore(key, "-inf", cutoff_ms)
        # everything except the newest `count` members
        overflow = await self._redis.zrange(key, 0, -(rule.count + 1))
        doomed = set(expired) | set(overflow)
        if not doomed:
            return 0
        pipe = self._redis.pipeline()
        for job_id in doomed:
            pipe.zrem(key, job_id)
            pipe.delete(self._job_key(queue, job_id))
        await pipe.execute()
        return len(doomed)

    async def requeue_stalled(self, queue: str, older_than: float) -> int:
        cutoff_ms = (time.time() - older_than) * 1000
        stalled = await self._redis.zrangebyscore(self._state_key(queue, JobState.ACTIVE), "-inf", cutoff_ms)
        moved = 0
        for job_id in stalled:
            if not await self._redis.zrem(self._state_key(queue, JobState.ACTIVE), job_id):
                continue
            job = await self._load(queue, job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            job.started_at = None
            await self._save(job)
            score = await self._wait_score(job)
            await self._redis.zadd(self._state_key(queue, JobState.WAITING), {job_id: score})
            moved += 1
        return moved

    async def claim_side_effect(self, job_id: str, effect: str, ttl: float = 7 * 86_400) -> bool:
        key = f"{self._prefix}:effect:{job_id}:{effect}"
        return bool(await self._redis.set(key, "1", nx=True, ex=int(ttl)))

    async def release_side_effect(self, job_id: str, effect: str) -> None:
        await self._redis.delete(f"{self._prefix}:effect:{job_id}:{effect}")


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test broker backed by heaps and asyncio conditions.
    Single-process only — no persistence.
    """

    def __init__(self):
        self._jobs: dict[str, dict[str, Job]] = {}
        self._waiting: dict[str, list[tuple[int, int, str]]] = {}   # (priority, seq, job_id)
        self._delayed: dict[str, list[tuple[float, int, str]]] = {}  # (run_at ts, seq, job_id)
        self._active_since: dict[str, dict[str, float]] = {}
        self._finished: dict[tuple[str, JobState], dict[str, float]] = {}
        self._effects: dict[str, float] = {}
        self._effect_expiry: list[tuple[float, str]] = []          # (expires ts, key)
        self._conditions: dict[str, asyncio.Condition] = {}
        self._seq = itertools.count()

    def _condition(self, queue: str) -> asyncio.Condition:
        if queue not in self._conditions:
            self._conditions[queue] = asyncio.Condition()
        return self._conditions[queue]

    def _jobs_of(self, queue: str) -> dict[str, Job]:
        return self._jobs.setdefault(queue, {})

    async def connect(self):
        logger.info("inmemory_broker_connected")

    async def close(self):
        pass

    async def _notify(self, queue: str) -> None:
        cond = self._condition(queue)
        async with cond:
            cond.notify_all()

    def _push_waiting(self, job: Job) -> None:
        heapq.heappush(self._waiting.setdefault(job.queue_name, []),
                       (job.priority, next(self._seq), job.id))

    def _push_delayed(self, job: Job) -> None:
        heapq.heappush(self._delayed.setdefault(job.queue_name, []),
                       (_ts(job.run_at), next(self._seq), job.id))

    def _promote_due(self, queue: str) -> int:
        heap = self._delayed.get(queue)
        promoted = 0
        now = time.time()
        while heap and heap[0][0] <= now:
            _, _, job_id = heapq.heappop(heap)
            job = self._jobs_of(queue).get(job_id)
            if job is None or job.state != JobState.DELAYED:
                continue
            job.state = JobState.WAITING
            self._push_waiting(job)
            promoted += 1
        return promoted

    def _next_due_in(self, queue: str) -> Optional[float]:
        heap = self._delayed.get(queue)
        if not heap:
            return None
        return max(heap[0][0] - time.time(), 0.0)

    def _pop_waiting(self, queue: str) -> Optional[Job]:
        heap = self._waiting.get(queue)
        while heap:
            _, _, job_id = heapq.heappop(heap)
            job = self._jobs_of(queue).get(job_id)
            if job is not None and job.state == JobState.WAITING:
                return job
        return None

    async def add(self, job: Job) -> tuple[Job, bool]:
        jobs = self._jobs_of(job.queue_name)
        existing = jobs.get(job.id)
        if existing is not None:
            return existing, False
        jobs[job.id] = job
        if job.state == JobState.DELAYED:
            self._push_delayed(job)
        else:
            job.state = JobState.WAITING
            self._push_waiting(job)
        await self._notify(job.queue_name)
        return job, True

    async def claim(self, queue: str, timeout: float = 1.0) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        cond = self._condition(queue)
        async with cond:
            while True:
                self._promote_due(queue)
                job = self._pop_waiting(queue)
                if job is not None:
                    job.state = JobState.ACTIVE
                    job.started_at = utcnow()
                    self._active_since.setdefault(queue, {})[job.id] = time.time()
                    return job
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                due_in = self._next_due_in(queue)
                wait = remaining if due_in is None else min(remaining, max(due_in, 0.001))
                try:
                    await asyncio.wait_for(cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    def _finish(self, job: Job, state: JobState) -> Job:
        job.state = state
        job.finished_at = utcnow()
        self._active_since.get(job.queue_name, {}).pop(job.id, None)
        self._finished.setdefault((job.queue_name, state), {})[job.id] = _ts(job.finished_at)
        return job

    async def complete(self, job: Job, result: Any = None) -> Job:
        job.result = result
        return self._finish(job, JobState.COMPLETED)

    async def fail(self, job: Job, reason: str) -> Job:
        job.failed_reason = reason
        return self._finish(job, JobState.FAILED)

    async def retry(self, job: Job, delay: float, reason: str) -> Job:
        job.failed_reason = reason
        job.started_at = None
        self._active_since.get(job.queue_name, {}).pop(job.id, None)
        if delay > 0:
            job.state = JobState.DELAYED
            job.run_at = utcnow() + timedelta(seconds=delay)
            self._push_delayed(job)
        else:
            job.state = JobState.WAITING
            job.run_at = None
            self._push_waiting(job)
        await self._notify(job.queue_name)
        return job

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        return self._jobs_of(queue).get(job_id)

    async def list_jobs(self, queue: str, state: JobState, limit: int = 50) -> list[Job]:
        matching = [j for j in self._jobs_of(queue).values() if j.state == state]
        matching.sort(key=lambda j: (j.priority, j.created_at))
        return matching[:limit]

    async def counts(self, queue: str) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs_of(queue).values():
            counts[job.state.value] += 1
        return counts

    async def promote_delayed(self, queue: str) -> int:
        promoted = self._promote_due(queue)
        if promoted:
            await self._notify(queue)
        return promoted

    async def prune(self, queue: str, state: JobState, rule: RetentionRule) -> int:
        finished = self._finished.get((queue, state), {})
        if not finished:
            return 0
        cutoff = time.time() - rule.age
        newest_first = sorted(finished.items(), key=lambda kv: kv[1], reverse=True)
        doomed = [job_id for i, (job_id, ts) in enumerate(newest_first)
                  if i >= rule.count or ts < cutoff]
        jobs = self._jobs_of(queue)
        for job_id in doomed:
            finished.pop(job_id, None)
            jobs.pop(job_id, None)
        return len(doomed)

    async def requeue_stalled(self, queue: str, older_than: float) -> int:
        cutoff = time.time() - older_than
        active = self._active_since.get(queue, {})
        stalled = [job_id for job_id, since in active.items() if since < cutoff]
        for job_id in stalled:
            active.pop(job_id, None)
            job = self._jobs_of(queue).get(job_id)
            if job is None or job.state != JobState.ACTIVE:
                continue
            job.state = JobState.WAITING
            job.started_at = None
            self._push_waiting(job)
        if stalled:
            await self._notify(queue)
        return len(stalled)

    def _evict_expired_effects(self, now: float) -> None:
        heap = self._effect_expiry
        while heap and heap[0][0] <= now:
            expires, key = heapq.heappop(heap)
            # released or re-claimed keys leave stale heap entries behind
            if self._effects.get(key) == expires:
                del self._effects[key]

    async def claim_side_effect(self, job_id: str, effect: str, ttl: float = 7 * 86_400) -> bool:
        key = f"{job_id}:{effect}"
        now = time.time()
        self._evict_expired_effects(now)
        if key in self._effects:
            return False
        expires = now + ttl
        self._effects[key] = expires
        heapq.heappush(self._effect_expiry, (expires, key))
        return True

    async def release_side_effect(self, job_id: str, effect: str) -> None:
        self._effects.pop(f"{job_id}:{effect}", None)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate broker backend."""
    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        broker = RedisMessageQueue(redis_url=url, prefix=config.get("key_prefix", "bq"))
    else:
        broker = InMemoryMessageQueue()

    logger.info("broker_created", backend=backend)
    return broker
