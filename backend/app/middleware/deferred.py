"""HTTP deferral middleware.

Converts matching API calls into deferred requests and answers them with
202 Accepted and a polling link. Every other request, including the
in-process replay of a deferred request, passes through untouched.
"""

import json
import logging
from typing import Any
from urllib.parse import parse_qs

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from backend.app.api.auth import InvalidTokenError, parse_bearer_token
from backend.app.db.context import OrganizationContext
from backend.app.db.repositories import DeferredRequestRecord
from backend.app.deferred.decision import RequestDescriptor, decide
from backend.app.deferred.dispatcher import InboundRequest
from backend.app.deferred.errors import StoreUnavailableError
from backend.app.deferred.replay import DEFER_HEADER, REPLAY_HEADER
from backend.app.deferred.rules import CompiledRule
from backend.app.deferred.service import DeferredServices
from backend.app.models.common import HttpMethod
from backend.app.models.deferred import (
    AcceptedAttributes,
    AcceptedResource,
    AcceptedResponse,
    ErrorObject,
    ErrorResponse,
    ResourceLinks,
)

logger = logging.getLogger(__name__)

_METHODS = {m.value for m in HttpMethod}


def _is_true(value: str | None) -> bool:
    return value is not None and value.strip().lower() == "true"


def parse_query_params(query_string: bytes) -> dict[str, Any]:
    """Single values as strings, repeated keys as lists."""
    parsed = parse_qs(query_string.decode("latin-1"), keep_blank_values=True)
    return {k: v[0] if len(v) == 1 else v for k, v in parsed.items()}


def parse_payload(body: bytes) -> Any | None:
    """JSON body when it parses, raw text otherwise."""
    if not body:
        return None
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body.decode("utf-8", errors="replace")


def accepted_body(record: DeferredRequestRecord) -> dict[str, Any]:
    """Body of the 202 response for a new deferred request."""
    response = AcceptedResponse(
        data=AcceptedResource(
            id=record.request_id,
            attributes=AcceptedAttributes(
                status=record.status,
                endpoint=record.endpoint,
                http_method=record.http_method,
                created_at=record.created_at,
                expires_at=record.expires_at,
            ),
            links=ResourceLinks.for_request(record.request_id),
        )
    )
    return response.model_dump(mode="json", by_alias=True)


def store_unavailable_response() -> JSONResponse:
    error = ErrorResponse(
        errors=[
            ErrorObject(
                status="503",
                code="STORE_UNAVAILABLE",
                title="Service Unavailable",
                detail="Deferred request storage is unavailable",
            )
        ]
    )
    return JSONResponse(error.model_dump(), status_code=503)


async def read_body(receive: Receive) -> bytes:
    chunks: list[bytes] = []
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            break
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


class DeferredRequestMiddleware:
    """ASGI middleware that defers matching requests.

    Reads the engine from ``app.state.deferred``; when it is missing or
    disabled the middleware is a pass-through.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"].upper() not in _METHODS:
            await self.app(scope, receive, send)
            return

        services = self._services(scope)
        if services is None or not services.settings.deferred_enabled:
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        is_replay = _is_true(headers.get(REPLAY_HEADER))
        ctx = None if is_replay else self._context(headers)

        descriptor = RequestDescriptor(
            method=scope["method"].upper(),
            path=scope["path"],
            has_defer_header=_is_true(headers.get(DEFER_HEADER)),
            is_deferred_replay=is_replay,
            is_authenticated=ctx is not None and ctx.is_authenticated,
        )

        rules: list[CompiledRule] = []
        if ctx is not None:
            try:
                rules = await services.rule_cache.rules_for(
                    None if ctx.is_global else ctx.org_id
                )
            except StoreUnavailableError:
                logger.exception("Deferred rules unavailable; rejecting request")
                await store_unavailable_response()(scope, receive, send)
                return

        decision = decide(descriptor, rules)
        services.metrics.inc_decision("deferred" if decision.defer else "sync", decision.reason)

        if not decision.defer or decision.rule is None or ctx is None:
            await self.app(scope, receive, send)
            return

        body = await read_body(receive)
        inbound = InboundRequest(
            method=descriptor.method,
            path=descriptor.path,
            payload=parse_payload(body),
            query_params=parse_query_params(scope.get("query_string", b"")),
            headers=dict(headers.items()),
        )

        try:
            record = await services.dispatcher.submit(inbound, decision.rule, ctx, decision.reason)
        except StoreUnavailableError:
            logger.exception("Deferred store unavailable; rejecting request")
            await store_unavailable_response()(scope, receive, send)
            return

        response = JSONResponse(
            accepted_body(record),
            status_code=202,
            headers={"Location": ResourceLinks.for_request(record.request_id).poll},
        )
        await response(scope, receive, send)

    @staticmethod
    def _services(scope: Scope) -> DeferredServices | None:
        app = scope.get("app")
        state = getattr(app, "state", None)
        return getattr(state, "deferred", None)

    @staticmethod
    def _context(headers: Headers) -> OrganizationContext | None:
        # Only explicit credentials make a request deferrable
        authorization = headers.get("authorization")
        if not authorization:
            return None
        try:
            return parse_bearer_token(authorization)
        except InvalidTokenError:
            return None
