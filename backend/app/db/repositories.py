"""Repository protocol interfaces for data access."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from backend.app.models.common import DeferredStatus, ExecutionErrorCode, HttpMethod, Priority


@dataclass
class EndpointRuleRecord:
    """Endpoint deferral rule."""

    rule_id: UUID
    org_id: UUID | None
    http_method: HttpMethod
    endpoint_pattern: str
    is_active: bool
    force_deferred: bool
    priority: Priority
    timeout_seconds: int
    result_ttl_seconds: int | None
    created_at: datetime


@dataclass
class DeferredRequestRecord:
    """Deferred request data record."""

    request_id: UUID
    org_id: UUID | None
    user_id: UUID
    http_method: HttpMethod
    endpoint: str
    payload: Any | None
    query_params: dict[str, Any]
    headers: dict[str, str]
    status: DeferredStatus
    priority: Priority
    timeout_seconds: int
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    # Captured with the owner so the replay keeps superadmin rights
    is_superadmin: bool = False
    progress: int | None = None
    progress_message: str | None = None
    result: Any | None = None
    result_status_code: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def can_retry(self) -> bool:
        return self.status == DeferredStatus.failed and self.attempts < self.max_attempts


@dataclass
class PurgeResult:
    """Outcome of an expiry purge."""

    deleted: int
    # Records purged while pending or processing (abandoned work)
    non_terminal_ids: list[UUID] = field(default_factory=list)


class EndpointRuleRepository(Protocol):
    """Repository for endpoint rule operations."""

    async def add_rule(self, rule: EndpointRuleRecord) -> EndpointRuleRecord:
        """Persist a new rule.

        Args:
            rule: Rule to persist (pattern already validated)

        Returns:
            The stored rule
        """
        ...

    async def list_active_rules(self) -> list[EndpointRuleRecord]:
        """List active rules ordered by (created_at, rule_id).

        Returns:
            Active rules for every organization plus global rules
        """
        ...

    async def set_rule_active(self, rule_id: UUID, is_active: bool) -> bool:
        """Toggle a rule.

        Returns:
            True if the rule exists
        """
        ...


class DeferredRequestStore(Protocol):
    """Store for deferred request records.

    Every transition is a single-row compare-and-set; a method that returns
    None or False lost the race (or found the record in another state) and
    changed nothing.
    """

    async def create(self, record: DeferredRequestRecord) -> None:
        """Persist a new pending record."""
        ...

    async def get(self, request_id: UUID) -> DeferredRequestRecord | None:
        """Get a record by id."""
        ...

    async def list_for_user(
        self,
        user_id: UUID,
        *,
        statuses: list[DeferredStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeferredRequestRecord]:
        """List a user's records, newest first."""
        ...

    async def begin_attempt(
        self, request_id: UUID, expected_attempts: int, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move pending (or failed, for an automatic retry) to processing.

        Applies only when the stored attempt count equals ``expected_attempts``
        and is below ``max_attempts``. Increments attempts and sets started_at.

        Returns:
            The updated record, or None if this delivery must be ignored
        """
        ...

    async def complete(
        self,
        request_id: UUID,
        attempt: int,
        *,
        result: Any,
        status_code: int,
        now: datetime,
    ) -> bool:
        """Move processing to completed for the given attempt."""
        ...

    async def fail(
        self,
        request_id: UUID,
        attempt: int,
        *,
        error_code: ExecutionErrorCode,
        error_message: str,
        now: datetime,
    ) -> bool:
        """Move processing to failed for the given attempt."""
        ...

    async def cancel(self, request_id: UUID, now: datetime) -> DeferredRequestRecord | None:
        """Move pending or processing to cancelled."""
        ...

    async def reset_for_retry(
        self, request_id: UUID, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move failed (with attempts left) back to pending."""
        ...

    async def update_progress(
        self, request_id: UUID, progress: int, message: str | None, now: datetime
    ) -> bool:
        """Record progress while processing."""
        ...

    async def list_stale_pending(
        self, created_before: datetime, now: datetime, limit: int = 100
    ) -> list[DeferredRequestRecord]:
        """List unexpired pending records created before a cutoff."""
        ...

    async def list_stale_processing(
        self, started_before: datetime, limit: int = 100
    ) -> list[DeferredRequestRecord]:
        """List processing records whose current attempt started before a cutoff."""
        ...

    async def count_expired(self, cutoff: datetime) -> int:
        """Count records whose expires_at is before the cutoff."""
        ...

    async def purge_expired(self, cutoff: datetime) -> PurgeResult:
        """Delete records whose expires_at is before the cutoff."""
        ...

    async def count_by_status(self) -> dict[DeferredStatus, int]:
        """Count records per status."""
        ...
