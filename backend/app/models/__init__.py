"""Models package - re-exports for convenience."""

from backend.app.models.common import (
    TERMINAL_STATUSES,
    DeferredStatus,
    ExecutionErrorCode,
    HttpMethod,
    Priority,
)
from backend.app.models.deferred import (
    AcceptedAttributes,
    AcceptedResource,
    AcceptedResponse,
    DeferredAttributes,
    DeferredListResponse,
    DeferredRelationships,
    DeferredResource,
    DeferredResponse,
    DeferredTask,
    ErrorObject,
    ErrorResponse,
    PageMeta,
    ResourceLinks,
)

__all__ = [
    # Common
    "DeferredStatus",
    "TERMINAL_STATUSES",
    "Priority",
    "HttpMethod",
    "ExecutionErrorCode",
    # Queue
    "DeferredTask",
    # Accepted (202)
    "AcceptedAttributes",
    "AcceptedResource",
    "AcceptedResponse",
    # Polling
    "DeferredAttributes",
    "DeferredRelationships",
    "DeferredResource",
    "DeferredResponse",
    "DeferredListResponse",
    "PageMeta",
    "ResourceLinks",
    # Errors
    "ErrorObject",
    "ErrorResponse",
]
