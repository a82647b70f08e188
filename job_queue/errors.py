"""
Job system errors.

UnknownQueueError and ValidationError abort dispatch synchronously.
HandlerError (and HandlerTimeoutError) are raised inside handlers and
go through the queue's retry policy. CreditExhaustedError is raised
before dispatch and never reaches a queue.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


class JobQueueError(Exception):
    """Base exception for all job system operations."""


class UnknownQueueError(JobQueueError):
    def __init__(self, queue_name: str, available: Iterable[str] = ()):
        self.queue_name = queue_name
        self.available = sorted(available)
        super().__init__(
            f'Unknown queue: "{queue_name}". Available: {", ".join(self.available)}'
        )


@dataclass(frozen=True)
class FieldIssue:
    loc: str
    message: str
    type: str = ""


class ValidationError(JobQueueError):
    """Payload rejected by the queue's schema. Lists every failing field."""

    def __init__(self, queue_name: str, issues: list[FieldIssue]):
        self.queue_name = queue_name
        self.issues = list(issues)
        summary = "; ".join(f"{i.loc}: {i.message}" for i in self.issues)
        super().__init__(f'Invalid payload for queue "{queue_name}": {summary}')

    @property
    def fields(self) -> list[str]:
        return [i.loc for i in self.issues]

    def to_dict(self) -> dict:
        return {
            "queue": self.queue_name,
            "errors": [{"field": i.loc, "message": i.message, "type": i.type} for i in self.issues],
        }


class HandlerError(JobQueueError):
    """Raised inside a handler. Retryable errors are subject to the retry policy."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class HandlerTimeoutError(HandlerError):
    def __init__(self, queue_name: str, job_id: str, timeout: float):
        self.queue_name = queue_name
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Job {job_id} on {queue_name} exceeded {timeout:g}s timeout")


class CreditExhaustedError(JobQueueError):
    def __init__(self, user_id: str, credit_type: str, remaining: int = 0,
                 reason: Optional[str] = None):
        self.user_id = user_id
        self.credit_type = credit_type
        self.remaining = remaining
        self.reason = reason or f"Not enough {credit_type} credits"
        super().__init__(self.reason)
