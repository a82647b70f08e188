"""Shared test fixtures for the BrandFlow job system."""
import asyncio
import inspect
import uuid

import pytest

from backend.connector import (
    Connectors, LoggingCrmConnector, LoggingEmailConnector,
    LoggingGenerationProvider, LoggingStorageConnector,
)
from config.settings import Settings
from credits.gate import CreditGate
from credits.store import InMemoryCreditStore
from database.store_memory import InMemoryBrandStore
from job_queue.dispatch import Dispatcher
from job_queue.message_queue import InMemoryMessageQueue
from job_queue.registry import DEFAULT_QUEUE_POLICIES, QueueRegistry, build_default_registry
from models.schemas import QueuePolicy
from progress.bridge import ProgressBridge


def fast_policy(policy: QueuePolicy, backoff_delay: float = 0.01, timeout: float = None) -> QueuePolicy:
    """Same queue, tiny backoff so retry paths finish inside a test."""
    update = {"retry": policy.retry.model_copy(update={"backoff_delay": backoff_delay})}
    if timeout is not None:
        update["timeout"] = timeout
    return policy.model_copy(update=update)


def fast_registry() -> QueueRegistry:
    return QueueRegistry(fast_policy(p) for p in DEFAULT_QUEUE_POLICIES).freeze()


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll a predicate (sync or async) until it holds; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        ok = predicate()
        if inspect.isawaitable(ok):
            ok = await ok
        if ok:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def brand_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def registry() -> QueueRegistry:
    return build_default_registry()


@pytest.fixture
def broker() -> InMemoryMessageQueue:
    return InMemoryMessageQueue()


@pytest.fixture
def dispatcher(registry, broker) -> Dispatcher:
    return Dispatcher(registry, broker)


@pytest.fixture
def bridge() -> ProgressBridge:
    return ProgressBridge()


@pytest.fixture
def credit_store() -> InMemoryCreditStore:
    return InMemoryCreditStore()


@pytest.fixture
def gate(credit_store, broker) -> CreditGate:
    return CreditGate(credit_store, broker=broker)


@pytest.fixture
def store() -> InMemoryBrandStore:
    return InMemoryBrandStore()


@pytest.fixture
def connectors() -> Connectors:
    return Connectors(
        generation=LoggingGenerationProvider(),
        crm=LoggingCrmConnector(),
        email=LoggingEmailConnector(),
        storage=LoggingStorageConnector(),
    )


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.queue.poll_interval = 0.05
    s.queue.shutdown_grace = 1.0
    s.queue.schedule_recurring = False
    s.abandonment.app_url = "https://app.brandflow.test"
    s.abandonment.resume_token_secret = "test-secret"
    return s


@pytest.fixture
def logo_payload(user_id, brand_id) -> dict:
    return {
        "user_id": user_id,
        "brand_id": brand_id,
        "brand_name": "Sunny Side Studio",
        "logo_style": "minimal",
        "color_palette": ["#FFB703", "#023047"],
        "brand_vision": "Warm, hand-made ceramics for everyday breakfasts",
        "count": 2,
    }


@pytest.fixture
def email_payload(user_id) -> dict:
    return {
        "to": "creator@example.com",
        "template": "welcome",
        "data": {"user_name": "Ada"},
        "user_id": user_id,
    }
