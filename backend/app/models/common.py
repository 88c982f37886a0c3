"""Common types and enums shared across all models."""

from enum import Enum


class DeferredStatus(str, Enum):
    """Deferred request lifecycle status."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeferredStatus.completed, DeferredStatus.failed, DeferredStatus.cancelled}
)


class Priority(str, Enum):
    """Execution priority; each value is one queue lane."""

    low = "low"
    default = "default"
    high = "high"


class HttpMethod(str, Enum):
    """HTTP methods a rule can defer."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class ExecutionErrorCode(str, Enum):
    """Error codes recorded on failed attempts."""

    EXECUTION_ERROR = "EXECUTION_ERROR"
    TIMEOUT = "TIMEOUT"
    JOB_FAILED = "JOB_FAILED"
