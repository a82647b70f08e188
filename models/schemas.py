"""
Core data models for the BrandFlow job system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class BackoffKind(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class ProgressEventType(str, Enum):
    PROGRESS = "job:progress"
    COMPLETE = "job:complete"
    FAILED = "job:failed"


class CreditType(str, Enum):
    LOGO = "logo"
    MOCKUP = "mockup"
    VIDEO = "video"
    GENERATION = "generation"


# ──────────────────────────────────────────────────────────────
#  Queue policy — immutable, defined at startup
# ──────────────────────────────────────────────────────────────

class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempts: int = Field(ge=1)
    backoff_delay: float = Field(ge=0)         # seconds
    backoff_kind: BackoffKind = BackoffKind.EXPONENTIAL

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt, given how many attempts already failed."""
        if self.backoff_kind == BackoffKind.FIXED:
            return self.backoff_delay
        return self.backoff_delay * (2 ** max(attempts_made - 1, 0))


class RetentionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int = Field(ge=0)                   # keep at most N jobs
    age: float = Field(ge=0)                   # seconds


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    completed: RetentionRule
    failed: RetentionRule


class QueuePolicy(BaseModel):
    """Per-queue concurrency, timeout, retry and retention settings."""
    model_config = ConfigDict(frozen=True)

    name: str
    concurrency: int = Field(ge=1)
    timeout: float = Field(gt=0)               # seconds
    priority: int = Field(ge=0)                # lower = more urgent
    retry: RetryPolicy
    retention: RetentionPolicy


# ──────────────────────────────────────────────────────────────
#  Job — a unit of asynchronous work
# ──────────────────────────────────────────────────────────────

class JobOrigin(BaseModel):
    user_id: Optional[str] = None
    brand_id: Optional[str] = None


class Job(BaseModel):
    id: str
    queue_name: str
    payload: dict[str, Any] = {}
    priority: int = 0
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    created_at: datetime = Field(default_factory=utcnow)
    enqueued_by: JobOrigin = Field(default_factory=JobOrigin)
    run_at: Optional[datetime] = None          # eligibility time for delayed jobs
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Any = None
    failed_reason: str = ""
    meta: dict[str, Any] = {}

    @property
    def brand_id(self) -> Optional[str]:
        return self.payload.get("brand_id") or self.enqueued_by.brand_id

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("user_id") or self.enqueued_by.user_id

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)


# ──────────────────────────────────────────────────────────────
#  Progress — transient broadcast to brand/job rooms
# ──────────────────────────────────────────────────────────────

class ProgressEvent(BaseModel):
    """Wire shape: {jobId, brandId, status, progress, message, result?, timestamp}."""
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    brand_id: str = Field(alias="brandId")
    status: str
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    result: Optional[Any] = None
    error: Optional[str] = None
    retries_left: Optional[int] = Field(default=None, alias="retriesLeft")
    timestamp: int = Field(default_factory=now_ms)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ──────────────────────────────────────────────────────────────
#  Brand sessions — rows owned by the relational store
# ──────────────────────────────────────────────────────────────

class BrandSession(BaseModel):
    """A brand wizard session, as far as abandonment detection cares."""
    brand_id: str
    user_id: str
    current_step: str = "phone-terms"
    last_activity: datetime = Field(default_factory=utcnow)
    abandoned: bool = False


class CreatorProfile(BaseModel):
    user_id: str
    email: str = ""
    full_name: str = ""

    @property
    def first_name(self) -> str:
        return (self.full_name or "there").split(" ")[0]


class JobRecord(BaseModel):
    """Terminal outcome a handler persists so reconnecting clients can poll it."""
    job_id: str
    queue_name: str
    brand_id: Optional[str] = None
    status: str
    result: Any = None
    error: str = ""
    updated_at: datetime = Field(default_factory=utcnow)
