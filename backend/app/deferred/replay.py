"""In-process replay of a deferred request through the ASGI application."""

import json
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

import httpx
from starlette.types import ASGIApp

from backend.app.db.context import OrganizationContext
from backend.app.db.repositories import DeferredRequestRecord

DEFER_HEADER = "x-blafast-defer"
REPLAY_HEADER = "x-deferred-execution"
REPLAY_ID_HEADER = "x-deferred-request-id"

_REPLAY_BASE_URL = "http://deferred.internal"


@dataclass
class ReplayResponse:
    """Status and decoded body of a replayed request."""

    status_code: int
    body: Any


class Replayer(Protocol):
    """Executes a stored request on behalf of its owner."""

    async def replay(
        self, record: DeferredRequestRecord, ctx: OrganizationContext
    ) -> ReplayResponse:
        ...


def bearer_token_for(ctx: OrganizationContext) -> str:
    """Token in the format accepted by the auth dependency."""
    if ctx.is_global or ctx.org_id is None:
        return f"Bearer global:{ctx.user_id}"
    if ctx.is_superadmin:
        return f"Bearer {ctx.org_id}:{ctx.user_id}:superadmin"
    return f"Bearer {ctx.org_id}:{ctx.user_id}"


def replay_headers(
    request_id: UUID, stored: dict[str, str], ctx: OrganizationContext
) -> dict[str, str]:
    """Stored allow-listed headers plus the replay markers and credentials."""
    headers = dict(stored)
    headers[REPLAY_HEADER] = "true"
    headers[REPLAY_ID_HEADER] = str(request_id)
    headers["authorization"] = bearer_token_for(ctx)
    return headers


def decode_body(response: httpx.Response) -> Any:
    """JSON body if possible, text otherwise; empty bodies become ``{}``."""
    if not response.content:
        return {}
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


class AsgiReplayer:
    """Replays requests against the app via ``httpx.ASGITransport``."""

    def __init__(self, app: ASGIApp) -> None:
        self._app = app

    async def replay(
        self, record: DeferredRequestRecord, ctx: OrganizationContext
    ) -> ReplayResponse:
        body_kwargs: dict[str, Any] = {}
        if isinstance(record.payload, str):
            body_kwargs["content"] = record.payload.encode("utf-8")
        elif record.payload is not None:
            body_kwargs["json"] = record.payload

        transport = httpx.ASGITransport(app=self._app)
        async with httpx.AsyncClient(transport=transport, base_url=_REPLAY_BASE_URL) as client:
            response = await client.request(
                record.http_method.value,
                "/" + record.endpoint.lstrip("/"),
                params=record.query_params or None,
                headers=replay_headers(record.request_id, record.headers, ctx),
                **body_kwargs,
            )

        return ReplayResponse(status_code=response.status_code, body=decode_body(response))
