"""
Tests for the Queue Registry and queue policies.

Covers:
  - Default catalog (names, concurrency, timeouts, retry)
  - Lookup failures
  - Freezing
  - Backoff calculation
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from job_queue.errors import UnknownQueueError
from job_queue.registry import (
    DEFAULT_QUEUE_POLICIES, Queues, QueueRegistry, build_default_registry,
)
from models.schemas import BackoffKind, QueuePolicy, RetentionPolicy, RetentionRule, RetryPolicy


def _policy(name: str = "test-queue", **overrides) -> QueuePolicy:
    fields = dict(
        name=name,
        concurrency=2,
        timeout=10,
        priority=1,
        retry=RetryPolicy(attempts=3, backoff_delay=1),
        retention=RetentionPolicy(
            completed=RetentionRule(count=10, age=60),
            failed=RetentionRule(count=10, age=60),
        ),
    )
    fields.update(overrides)
    return QueuePolicy(**fields)


# ──────────────────────────────────────────────────────────────
#  Default catalog
# ──────────────────────────────────────────────────────────────

class TestDefaultCatalog:
    def test_all_queues_registered(self, registry):
        assert len(registry) == 9
        assert set(registry.list_names()) == {
            "brand-wizard", "logo-generation", "mockup-generation", "bundle-composition",
            "video-generation", "crm-sync", "email-send", "image-upload", "cleanup",
        }

    def test_default_registry_is_frozen(self, registry):
        assert registry.frozen is True

    @pytest.mark.parametrize("name,concurrency,timeout,attempts,priority", [
        (Queues.BRAND_WIZARD, 2, 300, 2, 1),
        (Queues.LOGO_GENERATION, 4, 120, 3, 1),
        (Queues.VIDEO_GENERATION, 1, 300, 2, 2),
        (Queues.CRM_SYNC, 5, 30, 5, 5),
        (Queues.EMAIL_SEND, 10, 15, 5, 3),
        (Queues.IMAGE_UPLOAD, 5, 60, 3, 2),
        (Queues.CLEANUP, 1, 120, 1, 10),
    ])
    def test_policy_values(self, registry, name, concurrency, timeout, attempts, priority):
        policy = registry.lookup(name)
        assert policy.concurrency == concurrency
        assert policy.timeout == timeout
        assert policy.retry.attempts == attempts
        assert policy.priority == priority

    def test_cleanup_uses_fixed_backoff(self, registry):
        assert registry.lookup(Queues.CLEANUP).retry.backoff_kind == BackoffKind.FIXED

    def test_failed_jobs_kept_longer_than_completed(self):
        for policy in DEFAULT_QUEUE_POLICIES:
            assert policy.retention.failed.age > policy.retention.completed.age


# ──────────────────────────────────────────────────────────────
#  Lookup and registration
# ──────────────────────────────────────────────────────────────

class TestRegistry:
    def test_unknown_queue(self, registry):
        with pytest.raises(UnknownQueueError) as exc:
            registry.lookup("pdf-generation")
        assert exc.value.queue_name == "pdf-generation"
        assert "email-send" in exc.value.available
        assert "pdf-generation" in str(exc.value)

    def test_contains_and_iter(self, registry):
        assert "crm-sync" in registry
        assert "nope" not in registry
        assert [p.name for p in registry] == registry.list_names()

    def test_register_after_freeze_rejected(self):
        reg = QueueRegistry([_policy()]).freeze()
        with pytest.raises(RuntimeError):
            reg.register(_policy("another"))

    def test_duplicate_name_rejected(self):
        reg = QueueRegistry([_policy()])
        with pytest.raises(ValueError):
            reg.register(_policy())

    def test_build_default_returns_new_instance(self):
        assert build_default_registry() is not build_default_registry()


# ──────────────────────────────────────────────────────────────
#  Policies
# ──────────────────────────────────────────────────────────────

class TestPolicies:
    def test_exponential_backoff_doubles(self):
        retry = RetryPolicy(attempts=4, backoff_delay=3)
        assert [retry.delay_for(n) for n in (1, 2, 3)] == [3, 6, 12]

    def test_fixed_backoff_is_constant(self):
        retry = RetryPolicy(attempts=4, backoff_delay=5, backoff_kind=BackoffKind.FIXED)
        assert [retry.delay_for(n) for n in (1, 2, 3)] == [5, 5, 5]

    def test_policy_is_immutable(self):
        policy = _policy()
        with pytest.raises(PydanticValidationError):
            policy.concurrency = 99

    def test_concurrency_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            _policy(concurrency=0)

    def test_timeout_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            _policy(timeout=0)
