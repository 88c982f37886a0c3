"""Exception types for the deferred request engine."""

from uuid import UUID


class DeferredError(Exception):
    """Base class for deferred request errors."""

    pass


class InvalidEndpointPatternError(DeferredError, ValueError):
    """Endpoint pattern cannot be compiled.

    Raised when a rule is created or loaded, never while matching a request.
    """

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(f"Invalid endpoint pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class DeferredRequestNotFoundError(DeferredError):
    """No deferred request with this id."""

    def __init__(self, request_id: UUID) -> None:
        super().__init__(f"Deferred request {request_id} not found")
        self.request_id = request_id


class DeferredRequestForbiddenError(DeferredError):
    """Requester may not access this deferred request."""

    def __init__(self, request_id: UUID) -> None:
        super().__init__(f"Access to deferred request {request_id} denied")
        self.request_id = request_id


class InvalidTransitionError(DeferredError):
    """Requested lifecycle change is not allowed from the current status."""

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


class StoreUnavailableError(DeferredError):
    """Persistence backend cannot be reached.

    Never recorded on a request; it stops the consumer so the process
    supervisor can restart it.
    """

    pass


class EnqueueError(DeferredError):
    """Task could not be placed on its lane."""

    pass
