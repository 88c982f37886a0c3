"""Deferred request wire models - queue messages and API resources."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from backend.app.models.common import DeferredStatus, HttpMethod, Priority

RESOURCE_TYPE = "deferred-request"


class DeferredTask(BaseModel):
    """Message placed on a lane.

    Carries the record id, never a copy of the record: the worker re-reads
    the store on pickup. ``expected_attempts`` is the attempt count the
    record must still have for this delivery to start a new attempt.
    """

    request_id: UUID
    org_id: UUID | None
    user_id: UUID | None
    priority: Priority = Priority.default
    timeout_seconds: int = Field(..., gt=0)
    expected_attempts: int = Field(0, ge=0)
    is_superadmin: bool = False


class ResourceLinks(BaseModel):
    """Polling links for a deferred request.

    Serialize with ``by_alias=True`` so ``self_`` is emitted as ``self``.
    """

    model_config = ConfigDict(populate_by_name=True)

    self_: str = Field(..., alias="self")
    poll: str

    @classmethod
    def for_request(cls, request_id: UUID) -> "ResourceLinks":
        url = f"/api/v1/deferred/{request_id}"
        return cls(self_=url, poll=url)


class AcceptedAttributes(BaseModel):
    """Attributes returned with the 202 response."""

    status: DeferredStatus
    endpoint: str
    http_method: HttpMethod
    created_at: datetime
    expires_at: datetime


class AcceptedResource(BaseModel):
    """Resource body of the 202 response."""

    type: Literal["deferred-request"] = RESOURCE_TYPE
    id: UUID
    attributes: AcceptedAttributes
    links: ResourceLinks


class AcceptedResponse(BaseModel):
    """Body of the 202 response produced by the deferral middleware."""

    data: AcceptedResource


class DeferredAttributes(BaseModel):
    """Polling view of a deferred request."""

    http_method: HttpMethod
    endpoint: str
    status: DeferredStatus
    progress: int | None = Field(None, ge=0, le=100)
    progress_message: str | None = None
    # Only populated when status is completed
    result: Any | None = None
    result_status_code: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempts: int
    max_attempts: int
    priority: Priority
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime


class DeferredRelationships(BaseModel):
    """Owner references."""

    user_id: UUID
    org_id: UUID | None = None


class DeferredResource(BaseModel):
    """Deferred request resource."""

    type: Literal["deferred-request"] = RESOURCE_TYPE
    id: UUID
    attributes: DeferredAttributes
    relationships: DeferredRelationships
    links: ResourceLinks


class DeferredResponse(BaseModel):
    """Response for GET /api/v1/deferred/{id}, cancel and retry."""

    data: DeferredResource


class PageMeta(BaseModel):
    """Pagination metadata for listings."""

    limit: int
    offset: int
    count: int


class DeferredListResponse(BaseModel):
    """Response for GET /api/v1/deferred."""

    data: list[DeferredResource]
    meta: PageMeta


class ErrorObject(BaseModel):
    """Single API error."""

    status: str
    code: str
    title: str
    detail: str


class ErrorResponse(BaseModel):
    """Error envelope used by the deferred API."""

    errors: list[ErrorObject]
