"""Progress reporting for endpoints that may run as deferred requests."""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header

from backend.app.api.auth import get_current_context
from backend.app.api.routes.deferred import get_deferred_services
from backend.app.db.context import OrganizationContext
from backend.app.deferred.service import DeferredServices

logger = logging.getLogger(__name__)


class DeferredProgress:
    """Handle an endpoint uses to report progress while being replayed.

    Outside a deferred execution every update is a no-op, so endpoints can
    call it unconditionally.
    """

    def __init__(
        self,
        services: DeferredServices | None,
        request_id: UUID | None,
        ctx: OrganizationContext,
    ) -> None:
        self._services = services
        self._request_id = request_id
        self._ctx = ctx

    @property
    def request_id(self) -> UUID | None:
        return self._request_id

    @property
    def is_deferred(self) -> bool:
        return self._services is not None and self._request_id is not None

    async def update(self, progress: int, message: str | None = None) -> bool:
        """Record progress (clamped to 0-100).

        Returns:
            True if the record was processing and owned by the caller
        """
        if self._services is None or self._request_id is None:
            return False

        record = await self._services.store.get(self._request_id)
        if record is None or record.user_id != self._ctx.user_id:
            logger.warning(
                "Ignoring progress for unknown or foreign deferred request",
                extra={"structured": {"request_id": str(self._request_id)}},
            )
            return False

        return await self._services.requests.report_progress(self._request_id, progress, message)


async def get_deferred_progress(
    services: Annotated[DeferredServices, Depends(get_deferred_services)],
    ctx: Annotated[OrganizationContext, Depends(get_current_context)],
    x_deferred_execution: Annotated[str | None, Header()] = None,
    x_deferred_request_id: Annotated[str | None, Header()] = None,
) -> DeferredProgress:
    """Build the progress handle from the replay headers."""
    request_id: UUID | None = None
    if (x_deferred_execution or "").lower() == "true" and x_deferred_request_id:
        try:
            request_id = UUID(x_deferred_request_id)
        except ValueError:
            request_id = None
    return DeferredProgress(services, request_id, ctx)
