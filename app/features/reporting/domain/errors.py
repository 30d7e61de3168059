"""
Failure taxonomy for reporting jobs.

Every failure the worker sees is classified into a FailureKind so the queue
can decide whether to retry without inspecting error strings.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    VALIDATION = "validation"
    INFRASTRUCTURE = "infrastructure"


class JobError(Exception):
    """Base class for reporting job errors."""

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.VALIDATION


class TransientJobError(JobError):
    """A single run failed; the queue may retry it."""

    kind = FailureKind.TRANSIENT


class JobValidationError(JobError, ValueError):
    """Bad input (cron expression, delay, payload). Never retried."""

    kind = FailureKind.VALIDATION


class InfrastructureError(JobError):
    """Queue backend or worker unavailable."""

    kind = FailureKind.INFRASTRUCTURE


class ConflictError(JobValidationError):
    """The record already exists (duplicate recipient email, active subscription)."""


class NotFoundError(JobValidationError):
    """A referenced recipient, subscription or template does not exist."""


@dataclass(slots=True)
class JobFailure:
    """Structured failure record produced by the worker for one attempt."""

    kind: FailureKind
    error: str
    execution_time_ms: int
    failed_at: datetime
    success: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.VALIDATION

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "kind": self.kind.value,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "failed_at": self.failed_at.isoformat(),
        }


class JobExecutionFailed(Exception):
    """Raised by job dispatch; carries the JobFailure for the retry policy."""

    def __init__(self, failure: JobFailure):
        super().__init__(failure.error)
        self.failure = failure


def classify_exception(exc: BaseException) -> FailureKind:
    """Map an arbitrary exception raised by a handler to a FailureKind."""
    if isinstance(exc, JobError):
        return exc.kind
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return FailureKind.VALIDATION
    return FailureKind.TRANSIENT
