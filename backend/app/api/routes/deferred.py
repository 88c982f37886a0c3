"""Deferred request endpoints - polling, listing, cancel and retry."""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from backend.app.api.auth import get_current_context
from backend.app.db.context import OrganizationContext
from backend.app.db.repositories import DeferredRequestRecord
from backend.app.deferred.errors import (
    DeferredError,
    DeferredRequestForbiddenError,
    DeferredRequestNotFoundError,
    InvalidTransitionError,
)
from backend.app.deferred.service import DeferredRequestService, DeferredServices
from backend.app.models.common import DeferredStatus
from backend.app.models.deferred import (
    DeferredAttributes,
    DeferredListResponse,
    DeferredRelationships,
    DeferredResource,
    DeferredResponse,
    ErrorObject,
    ErrorResponse,
    PageMeta,
    ResourceLinks,
)

router = APIRouter(prefix="/api/v1/deferred", tags=["deferred"])


def get_deferred_services(request: Request) -> DeferredServices:
    """Engine components attached to the application."""
    return request.app.state.deferred  # type: ignore[no-any-return]


def get_request_service(
    services: Annotated[DeferredServices, Depends(get_deferred_services)],
) -> DeferredRequestService:
    return services.requests


def to_resource(record: DeferredRequestRecord) -> DeferredResource:
    """Polling view of a record; the result is exposed only once completed."""
    completed = record.status == DeferredStatus.completed
    return DeferredResource(
        id=record.request_id,
        attributes=DeferredAttributes(
            http_method=record.http_method,
            endpoint=record.endpoint,
            status=record.status,
            progress=record.progress,
            progress_message=record.progress_message,
            result=record.result if completed else None,
            result_status_code=record.result_status_code if completed else None,
            error_code=record.error_code,
            error_message=record.error_message,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            priority=record.priority,
            started_at=record.started_at,
            completed_at=record.completed_at,
            expires_at=record.expires_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        ),
        relationships=DeferredRelationships(user_id=record.user_id, org_id=record.org_id),
        links=ResourceLinks.for_request(record.request_id),
    )


def error_response(status_code: int, code: str, title: str, detail: str) -> JSONResponse:
    """Build a response in the ``{"errors": [...]}`` envelope."""
    body = ErrorResponse(
        errors=[ErrorObject(status=str(status_code), code=code, title=title, detail=detail)]
    )
    return JSONResponse(body.model_dump(), status_code=status_code)


def domain_error_response(error: DeferredError) -> JSONResponse:
    """Translate a domain error into an HTTP error response."""
    if isinstance(error, DeferredRequestNotFoundError):
        return error_response(
            status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Not Found", "Deferred request not found"
        )
    if isinstance(error, DeferredRequestForbiddenError):
        return error_response(
            status.HTTP_403_FORBIDDEN,
            "FORBIDDEN",
            "Forbidden",
            "You do not have access to this deferred request",
        )
    if isinstance(error, InvalidTransitionError):
        return error_response(status.HTTP_409_CONFLICT, error.code, "Conflict", error.detail)
    raise error


def _single(record: DeferredRequestRecord) -> JSONResponse:
    body: dict[str, Any] = DeferredResponse(data=to_resource(record)).model_dump(
        mode="json", by_alias=True
    )
    return JSONResponse(body)


def _parse_statuses(value: str | None) -> list[DeferredStatus] | None:
    if not value:
        return None
    return [DeferredStatus(part.strip()) for part in value.split(",") if part.strip()]


@router.get("", response_model=None)
async def list_deferred_requests(
    ctx: Annotated[OrganizationContext, Depends(get_current_context)],
    service: Annotated[DeferredRequestService, Depends(get_request_service)],
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> JSONResponse:
    """List the caller's deferred requests, newest first.

    Args:
        ctx: Request context
        service: Deferred request service
        status_filter: Comma-separated statuses (e.g. "pending,failed")
        limit: Page size
        offset: Page offset

    Returns:
        Page of deferred request resources
    """
    try:
        statuses = _parse_statuses(status_filter)
    except ValueError:
        allowed = ", ".join(s.value for s in DeferredStatus)
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "INVALID_STATUS",
            "Bad Request",
            f"status must be a comma-separated list of: {allowed}",
        )

    records = await service.list_for(ctx, statuses=statuses, limit=limit, offset=offset)
    body = DeferredListResponse(
        data=[to_resource(r) for r in records],
        meta=PageMeta(limit=limit, offset=offset, count=len(records)),
    )
    return JSONResponse(body.model_dump(mode="json", by_alias=True))


@router.get("/{request_id}", response_model=None)
async def get_deferred_request(
    request_id: UUID,
    ctx: Annotated[OrganizationContext, Depends(get_current_context)],
    service: Annotated[DeferredRequestService, Depends(get_request_service)],
) -> JSONResponse:
    """Poll a deferred request.

    Returns:
        404 if unknown, 403 unless the caller owns it or is a superadmin
    """
    try:
        record = await service.get_for(request_id, ctx)
    except DeferredError as e:
        return domain_error_response(e)
    return _single(record)


@router.post("/{request_id}/cancel", response_model=None)
async def cancel_deferred_request(
    request_id: UUID,
    ctx: Annotated[OrganizationContext, Depends(get_current_context)],
    service: Annotated[DeferredRequestService, Depends(get_request_service)],
) -> JSONResponse:
    """Cancel a pending or processing request (409 CANNOT_CANCEL otherwise)."""
    try:
        record = await service.cancel(request_id, ctx)
    except DeferredError as e:
        return domain_error_response(e)
    return _single(record)


@router.post("/{request_id}/retry", response_model=None)
async def retry_deferred_request(
    request_id: UUID,
    ctx: Annotated[OrganizationContext, Depends(get_current_context)],
    service: Annotated[DeferredRequestService, Depends(get_request_service)],
) -> JSONResponse:
    """Retry a failed request with attempts left (409 CANNOT_RETRY otherwise)."""
    try:
        record = await service.retry(request_id, ctx)
    except DeferredError as e:
        return domain_error_response(e)
    return _single(record)
