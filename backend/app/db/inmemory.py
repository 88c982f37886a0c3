"""In-memory implementations of repository interfaces.

No method awaits between reading and writing a record, so every
compare-and-set below is atomic on the event loop.
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any

from backend.app.db.repositories import DeferredRequestRecord, EndpointRuleRecord, PurgeResult
from backend.app.models.common import DeferredStatus, ExecutionErrorCode


class InMemoryEndpointRuleRepository:
    """In-memory implementation of EndpointRuleRepository."""

    def __init__(self) -> None:
        self._rules: dict[uuid.UUID, EndpointRuleRecord] = {}

    async def add_rule(self, rule: EndpointRuleRecord) -> EndpointRuleRecord:
        """Persist a new rule."""
        self._rules[rule.rule_id] = replace(rule)
        return replace(rule)

    async def list_active_rules(self) -> list[EndpointRuleRecord]:
        """List active rules ordered by (created_at, rule_id)."""
        active = [replace(r) for r in self._rules.values() if r.is_active]
        active.sort(key=lambda r: (r.created_at, r.rule_id))
        return active

    async def set_rule_active(self, rule_id: uuid.UUID, is_active: bool) -> bool:
        """Toggle a rule."""
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        self._rules[rule_id] = replace(rule, is_active=is_active)
        return True


class InMemoryDeferredRequestStore:
    """In-memory implementation of DeferredRequestStore."""

    def __init__(self) -> None:
        self._records: dict[uuid.UUID, DeferredRequestRecord] = {}

    async def create(self, record: DeferredRequestRecord) -> None:
        """Persist a new pending record."""
        self._records[record.request_id] = replace(record)

    async def get(self, request_id: uuid.UUID) -> DeferredRequestRecord | None:
        """Get a record by id."""
        record = self._records.get(request_id)
        return replace(record) if record is not None else None

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        *,
        statuses: list[DeferredStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeferredRequestRecord]:
        """List a user's records, newest first."""
        results = [
            replace(r)
            for r in self._records.values()
            if r.user_id == user_id and (not statuses or r.status in statuses)
        ]
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results[offset : offset + limit]

    async def begin_attempt(
        self, request_id: uuid.UUID, expected_attempts: int, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move pending (or failed, for an automatic retry) to processing."""
        record = self._records.get(request_id)
        if record is None:
            return None

        if record.status not in (DeferredStatus.pending, DeferredStatus.failed):
            return None
        if record.attempts != expected_attempts or record.attempts >= record.max_attempts:
            return None

        updated = replace(
            record,
            status=DeferredStatus.processing,
            started_at=now,
            attempts=record.attempts + 1,
            completed_at=None,
            error_code=None,
            error_message=None,
            updated_at=now,
        )
        self._records[request_id] = updated
        return replace(updated)

    async def complete(
        self,
        request_id: uuid.UUID,
        attempt: int,
        *,
        result: Any,
        status_code: int,
        now: datetime,
    ) -> bool:
        """Move processing to completed for the given attempt."""
        record = self._processing(request_id, attempt)
        if record is None:
            return False

        self._records[request_id] = replace(
            record,
            status=DeferredStatus.completed,
            result=result,
            result_status_code=status_code,
            progress=100,
            completed_at=now,
            updated_at=now,
        )
        return True

    async def fail(
        self,
        request_id: uuid.UUID,
        attempt: int,
        *,
        error_code: ExecutionErrorCode,
        error_message: str,
        now: datetime,
    ) -> bool:
        """Move processing to failed for the given attempt."""
        record = self._processing(request_id, attempt)
        if record is None:
            return False

        self._records[request_id] = replace(
            record,
            status=DeferredStatus.failed,
            error_code=error_code.value,
            error_message=error_message,
            completed_at=now,
            updated_at=now,
        )
        return True

    async def cancel(
        self, request_id: uuid.UUID, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move pending or processing to cancelled."""
        record = self._records.get(request_id)
        if record is None or record.status.is_terminal:
            return None

        updated = replace(
            record, status=DeferredStatus.cancelled, completed_at=now, updated_at=now
        )
        self._records[request_id] = updated
        return replace(updated)

    async def reset_for_retry(
        self, request_id: uuid.UUID, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move failed (with attempts left) back to pending."""
        record = self._records.get(request_id)
        if record is None or not record.can_retry:
            return None

        updated = replace(
            record,
            status=DeferredStatus.pending,
            error_code=None,
            error_message=None,
            completed_at=None,
            progress=None,
            progress_message=None,
            updated_at=now,
        )
        self._records[request_id] = updated
        return replace(updated)

    async def update_progress(
        self, request_id: uuid.UUID, progress: int, message: str | None, now: datetime
    ) -> bool:
        """Record progress while processing."""
        record = self._records.get(request_id)
        if record is None or record.status != DeferredStatus.processing:
            return False

        self._records[request_id] = replace(
            record, progress=progress, progress_message=message, updated_at=now
        )
        return True

    async def list_stale_pending(
        self, created_before: datetime, now: datetime, limit: int = 100
    ) -> list[DeferredRequestRecord]:
        """List unexpired pending records created before a cutoff."""
        stale = [
            replace(r)
            for r in self._records.values()
            if r.status == DeferredStatus.pending
            and r.created_at < created_before
            and r.expires_at > now
        ]
        stale.sort(key=lambda r: r.created_at)
        return stale[:limit]

    async def list_stale_processing(
        self, started_before: datetime, limit: int = 100
    ) -> list[DeferredRequestRecord]:
        """List processing records whose current attempt started before a cutoff."""
        stale = [
            replace(r)
            for r in self._records.values()
            if r.status == DeferredStatus.processing
            and r.started_at is not None
            and r.started_at < started_before
        ]
        stale.sort(key=lambda r: r.started_at or r.created_at)
        return stale[:limit]

    async def count_expired(self, cutoff: datetime) -> int:
        """Count records whose expires_at is before the cutoff."""
        return sum(1 for r in self._records.values() if r.expires_at < cutoff)

    async def purge_expired(self, cutoff: datetime) -> PurgeResult:
        """Delete records whose expires_at is before the cutoff."""
        expired = [r for r in self._records.values() if r.expires_at < cutoff]
        for record in expired:
            del self._records[record.request_id]

        return PurgeResult(
            deleted=len(expired),
            non_terminal_ids=[r.request_id for r in expired if not r.status.is_terminal],
        )

    async def count_by_status(self) -> dict[DeferredStatus, int]:
        """Count records per status."""
        counts = dict.fromkeys(DeferredStatus, 0)
        for record in self._records.values():
            counts[record.status] += 1
        return counts

    def _processing(self, request_id: uuid.UUID, attempt: int) -> DeferredRequestRecord | None:
        record = self._records.get(request_id)
        if record is None:
            return None
        if record.status != DeferredStatus.processing or record.attempts != attempt:
            return None
        return record
