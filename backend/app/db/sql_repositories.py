"""SQL implementations of repository interfaces.

Transitions are conditional ``UPDATE ... WHERE status = ...`` statements; a
rowcount of zero means another writer got there first and nothing changed.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.db.models import DeferredEndpointRule, DeferredRequest
from backend.app.db.repositories import DeferredRequestRecord, EndpointRuleRecord, PurgeResult
from backend.app.deferred.errors import StoreUnavailableError
from backend.app.models.common import (
    TERMINAL_STATUSES,
    DeferredStatus,
    ExecutionErrorCode,
    HttpMethod,
    Priority,
)
from backend.app.utils.clock import ensure_utc

_NON_TERMINAL = [DeferredStatus.pending.value, DeferredStatus.processing.value]


@asynccontextmanager
async def _session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session, mapping connectivity failures to StoreUnavailableError."""
    try:
        async with factory() as session:
            yield session
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailableError(f"Deferred store unavailable: {type(e).__name__}") from e


def _rule_to_record(row: DeferredEndpointRule) -> EndpointRuleRecord:
    return EndpointRuleRecord(
        rule_id=row.rule_id,
        org_id=row.org_id,
        http_method=HttpMethod(row.http_method),
        endpoint_pattern=row.endpoint_pattern,
        is_active=row.is_active,
        force_deferred=row.force_deferred,
        priority=Priority(row.priority),
        timeout_seconds=row.timeout_seconds,
        result_ttl_seconds=row.result_ttl_seconds,
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
    )


def _request_to_record(row: DeferredRequest) -> DeferredRequestRecord:
    return DeferredRequestRecord(
        request_id=row.request_id,
        org_id=row.org_id,
        user_id=row.user_id,
        http_method=HttpMethod(row.http_method),
        endpoint=row.endpoint,
        payload=row.payload,
        query_params=row.query_params or {},
        headers=row.headers or {},
        status=DeferredStatus(row.status),
        priority=Priority(row.priority),
        timeout_seconds=row.timeout_seconds,
        expires_at=ensure_utc(row.expires_at),  # type: ignore[arg-type]
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
        updated_at=ensure_utc(row.updated_at),  # type: ignore[arg-type]
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        is_superadmin=row.is_superadmin,
        progress=row.progress,
        progress_message=row.progress_message,
        result=row.result,
        result_status_code=row.result_status_code,
        error_code=row.error_code,
        error_message=row.error_message,
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
    )


class SqlEndpointRuleRepository:
    """SQL implementation of EndpointRuleRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add_rule(self, rule: EndpointRuleRecord) -> EndpointRuleRecord:
        """Persist a new rule."""
        row = DeferredEndpointRule(
            rule_id=rule.rule_id,
            org_id=rule.org_id,
            http_method=rule.http_method.value,
            endpoint_pattern=rule.endpoint_pattern,
            is_active=rule.is_active,
            force_deferred=rule.force_deferred,
            priority=rule.priority.value,
            timeout_seconds=rule.timeout_seconds,
            result_ttl_seconds=rule.result_ttl_seconds,
            created_at=rule.created_at,
        )

        async with _session_scope(self._session_factory) as session:
            session.add(row)
            await session.commit()

        return rule

    async def list_active_rules(self) -> list[EndpointRuleRecord]:
        """List active rules ordered by (created_at, rule_id)."""
        async with _session_scope(self._session_factory) as session:
            result = await session.execute(
                select(DeferredEndpointRule)
                .where(DeferredEndpointRule.is_active.is_(True))
                .order_by(DeferredEndpointRule.created_at, DeferredEndpointRule.rule_id)
            )
            return [_rule_to_record(row) for row in result.scalars().all()]

    async def set_rule_active(self, rule_id: uuid.UUID, is_active: bool) -> bool:
        """Toggle a rule."""
        async with _session_scope(self._session_factory) as session:
            result = await session.execute(
                update(DeferredEndpointRule)
                .where(DeferredEndpointRule.rule_id == rule_id)
                .values(is_active=is_active)
            )
            await session.commit()
            return result.rowcount == 1


class SqlDeferredRequestStore:
    """SQL implementation of DeferredRequestStore."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, record: DeferredRequestRecord) -> None:
        """Persist a new pending record."""
        row = DeferredRequest(
            request_id=record.request_id,
            org_id=record.org_id,
            user_id=record.user_id,
            http_method=record.http_method.value,
            endpoint=record.endpoint,
            payload=record.payload,
            query_params=record.query_params,
            headers=record.headers,
            status=record.status.value,
            progress=record.progress,
            progress_message=record.progress_message,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            is_superadmin=record.is_superadmin,
            priority=record.priority.value,
            timeout_seconds=record.timeout_seconds,
            expires_at=record.expires_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

        async with _session_scope(self._session_factory) as session:
            session.add(row)
            await session.commit()

    async def get(self, request_id: uuid.UUID) -> DeferredRequestRecord | None:
        """Get a record by id."""
        async with _session_scope(self._session_factory) as session:
            return await self._load(session, request_id)

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        *,
        statuses: list[DeferredStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeferredRequestRecord]:
        """List a user's records, newest first."""
        query = select(DeferredRequest).where(DeferredRequest.user_id == user_id)
        if statuses:
            query = query.where(DeferredRequest.status.in_([s.value for s in statuses]))
        query = query.order_by(DeferredRequest.created_at.desc()).limit(limit).offset(offset)

        async with _session_scope(self._session_factory) as session:
            result = await session.execute(query)
            return [_request_to_record(row) for row in result.scalars().all()]

    async def begin_attempt(
        self, request_id: uuid.UUID, expected_attempts: int, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move pending (or failed, for an automatic retry) to processing."""
        stmt = (
            update(DeferredRequest)
            .where(
                DeferredRequest.request_id == request_id,
                DeferredRequest.status.in_(
                    [DeferredStatus.pending.value, DeferredStatus.failed.value]
                ),
                DeferredRequest.attempts == expected_attempts,
                DeferredRequest.attempts < DeferredRequest.max_attempts,
            )
            .values(
                status=DeferredStatus.processing.value,
                started_at=now,
                attempts=DeferredRequest.attempts + 1,
                completed_at=None,
                error_code=None,
                error_message=None,
                updated_at=now,
            )
        )
        return await self._transition(request_id, stmt)

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
        stmt = (
            update(DeferredRequest)
            .where(
                DeferredRequest.request_id == request_id,
                DeferredRequest.status == DeferredStatus.processing.value,
                DeferredRequest.attempts == attempt,
            )
            .values(
                status=DeferredStatus.completed.value,
                result=result,
                result_status_code=status_code,
                progress=100,
                completed_at=now,
                updated_at=now,
            )
        )
        return await self._execute(stmt)

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
        stmt = (
            update(DeferredRequest)
            .where(
                DeferredRequest.request_id == request_id,
                DeferredRequest.status == DeferredStatus.processing.value,
                DeferredRequest.attempts == attempt,
            )
            .values(
                status=DeferredStatus.failed.value,
                error_code=error_code.value,
                error_message=error_message,
                completed_at=now,
                updated_at=now,
            )
        )
        return await self._execute(stmt)

    async def cancel(
        self, request_id: uuid.UUID, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move pending or processing to cancelled."""
        stmt = (
            update(DeferredRequest)
            .where(
                DeferredRequest.request_id == request_id,
                DeferredRequest.status.in_(_NON_TERMINAL),
            )
            .values(
                status=DeferredStatus.cancelled.value,
                completed_at=now,
                updated_at=now,
            )
        )
        return await self._transition(request_id, stmt)

    async def reset_for_retry(
        self, request_id: uuid.UUID, now: datetime
    ) -> DeferredRequestRecord | None:
        """Move failed (with attempts left) back to pending."""
        stmt = (
            update(DeferredRequest)
            .where(
                DeferredRequest.request_id == request_id,
                DeferredRequest.status == DeferredStatus.failed.value,
                DeferredRequest.attempts < DeferredRequest.max_attempts,
            )
            .values(
                status=DeferredStatus.pending.value,
                error_code=None,
                error_message=None,
                completed_at=None,
                progress=None,
                progress_message=None,
                updated_at=now,
            )
        )
        return await self._transition(request_id, stmt)

    async def update_progress(
        self, request_id: uuid.UUID, progress: int, message: str | None, now: datetime
    ) -> bool:
        """Record progress while processing."""
        stmt = (
            update(DeferredRequest)
            .where(
                DeferredRequest.request_id == request_id,
                DeferredRequest.status == DeferredStatus.processing.value,
            )
            .values(progress=progress, progress_message=message, updated_at=now)
        )
        return await self._execute(stmt)

    async def list_stale_pending(
        self, created_before: datetime, now: datetime, limit: int = 100
    ) -> list[DeferredRequestRecord]:
        """List unexpired pending records created before a cutoff."""
        query = (
            select(DeferredRequest)
            .where(
                DeferredRequest.status == DeferredStatus.pending.value,
                DeferredRequest.created_at < created_before,
                DeferredRequest.expires_at > now,
            )
            .order_by(DeferredRequest.created_at)
            .limit(limit)
        )

        async with _session_scope(self._session_factory) as session:
            result = await session.execute(query)
            return [_request_to_record(row) for row in result.scalars().all()]

    async def list_stale_processing(
        self, started_before: datetime, limit: int = 100
    ) -> list[DeferredRequestRecord]:
        """List processing records whose current attempt started before a cutoff."""
        query = (
            select(DeferredRequest)
            .where(
                DeferredRequest.status == DeferredStatus.processing.value,
                DeferredRequest.started_at < started_before,
            )
            .order_by(DeferredRequest.started_at)
            .limit(limit)
        )

        async with _session_scope(self._session_factory) as session:
            result = await session.execute(query)
            return [_request_to_record(row) for row in result.scalars().all()]

    async def count_expired(self, cutoff: datetime) -> int:
        """Count records whose expires_at is before the cutoff."""
        async with _session_scope(self._session_factory) as session:
            result = await session.execute(
                select(func.count())
                .select_from(DeferredRequest)
                .where(DeferredRequest.expires_at < cutoff)
            )
            return int(result.scalar_one())

    async def purge_expired(self, cutoff: datetime) -> PurgeResult:
        """Delete records whose expires_at is before the cutoff."""
        async with _session_scope(self._session_factory) as session:
            result = await session.execute(
                select(DeferredRequest.request_id, DeferredRequest.status).where(
                    DeferredRequest.expires_at < cutoff
                )
            )
            rows = result.all()
            if not rows:
                return PurgeResult(deleted=0)

            ids = [row.request_id for row in rows]
            deleted = await session.execute(
                delete(DeferredRequest).where(DeferredRequest.request_id.in_(ids))
            )
            await session.commit()

            terminal = {s.value for s in TERMINAL_STATUSES}
            return PurgeResult(
                deleted=deleted.rowcount,
                non_terminal_ids=[row.request_id for row in rows if row.status not in terminal],
            )

    async def count_by_status(self) -> dict[DeferredStatus, int]:
        """Count records per status."""
        counts = dict.fromkeys(DeferredStatus, 0)

        async with _session_scope(self._session_factory) as session:
            result = await session.execute(
                select(DeferredRequest.status, func.count()).group_by(DeferredRequest.status)
            )
            for status_value, count in result.all():
                counts[DeferredStatus(status_value)] = int(count)

        return counts

    async def _load(
        self, session: AsyncSession, request_id: uuid.UUID
    ) -> DeferredRequestRecord | None:
        result = await session.execute(
            select(DeferredRequest)
            .where(DeferredRequest.request_id == request_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _request_to_record(row) if row is not None else None

    async def _execute(self, stmt: Any) -> bool:
        async with _session_scope(self._session_factory) as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
            return result.rowcount == 1

    async def _transition(
        self, request_id: uuid.UUID, stmt: Any
    ) -> DeferredRequestRecord | None:
        async with _session_scope(self._session_factory) as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
            if result.rowcount != 1:
                return None
            return await self._load(session, request_id)
