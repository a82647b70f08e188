"""
Queue Registry — static catalog of queue names → policy.

Built once at startup, frozen, and passed to the Dispatcher and the
WorkerManager. Reconfiguring a queue requires a process restart.

Catalog:
  brand-wizard        2 slots   5 min   user is actively waiting
  logo-generation     4 slots   2 min   image model rate limits
  mockup-generation   4 slots   2 min
  bundle-composition  2 slots   2 min
  video-generation    1 slot    5 min
  crm-sync            5 slots   30 s
  email-send          10 slots  15 s
  image-upload        5 slots   1 min
  cleanup             1 slot    2 min   maintenance, lowest priority
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Iterator

from job_queue.errors import UnknownQueueError
from models.schemas import (
    BackoffKind, QueuePolicy, RetentionPolicy, RetentionRule, RetryPolicy,
)

DAY = 86_400
WEEK = 604_800


class Queues:
    BRAND_WIZARD = "brand-wizard"
    LOGO_GENERATION = "logo-generation"
    MOCKUP_GENERATION = "mockup-generation"
    BUNDLE_COMPOSITION = "bundle-composition"
    VIDEO_GENERATION = "video-generation"
    CRM_SYNC = "crm-sync"
    EMAIL_SEND = "email-send"
    IMAGE_UPLOAD = "image-upload"
    CLEANUP = "cleanup"


def _policy(
    name: str,
    concurrency: int,
    timeout: float,
    priority: int,
    attempts: int,
    backoff_delay: float,
    keep_completed: int,
    keep_failed: int,
    backoff_kind: BackoffKind = BackoffKind.EXPONENTIAL,
) -> QueuePolicy:
    return QueuePolicy(
        name=name,
        concurrency=concurrency,
        timeout=timeout,
        priority=priority,
        retry=RetryPolicy(attempts=attempts, backoff_delay=backoff_delay, backoff_kind=backoff_kind),
        retention=RetentionPolicy(
            completed=RetentionRule(count=keep_completed, age=DAY),
            failed=RetentionRule(count=keep_failed, age=WEEK),
        ),
    )


DEFAULT_QUEUE_POLICIES: tuple[QueuePolicy, ...] = (
    _policy(Queues.BRAND_WIZARD, 2, 300, 1, 2, 5, 200, 500),
    _policy(Queues.LOGO_GENERATION, 4, 120, 1, 3, 3, 500, 500),
    _policy(Queues.MOCKUP_GENERATION, 4, 120, 1, 3, 3, 500, 500),
    _policy(Queues.BUNDLE_COMPOSITION, 2, 120, 2, 3, 5, 200, 200),
    _policy(Queues.VIDEO_GENERATION, 1, 300, 2, 2, 10, 100, 100),
    _policy(Queues.CRM_SYNC, 5, 30, 5, 5, 10, 1000, 1000),
    _policy(Queues.EMAIL_SEND, 10, 15, 3, 5, 5, 2000, 1000),
    _policy(Queues.IMAGE_UPLOAD, 5, 60, 2, 3, 3, 500, 500),
    _policy(Queues.CLEANUP, 1, 120, 10, 1, 60, 50, 50, backoff_kind=BackoffKind.FIXED),
)


class QueueRegistry:
    """
    Name → QueuePolicy lookup.

    Usage:
        registry = QueueRegistry()
        registry.register(policy)
        registry.freeze()
        registry.lookup("email-send")
    """

    def __init__(self, policies: Iterable[QueuePolicy] = ()):
        self._policies: dict[str, QueuePolicy] = {}
        self._frozen = False
        for policy in policies:
            self.register(policy)

    def register(self, policy: QueuePolicy) -> None:
        if self._frozen:
            raise RuntimeError("Queue registry is frozen; restart the process to reconfigure")
        if policy.name in self._policies:
            raise ValueError(f"Queue already registered: {policy.name}")
        self._policies[policy.name] = policy

    def freeze(self) -> "QueueRegistry":
        self._frozen = True
        self._policies = MappingProxyType(dict(self._policies))
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, name: str) -> QueuePolicy:
        policy = self._policies.get(name)
        if policy is None:
            raise UnknownQueueError(name, self._policies.keys())
        return policy

    def list_names(self) -> list[str]:
        return list(self._policies.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def __iter__(self) -> Iterator[QueuePolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)


def build_default_registry() -> QueueRegistry:
    """The production catalog, frozen."""
    return QueueRegistry(DEFAULT_QUEUE_POLICIES).freeze()
