"""Minimal auth dependency.

Stub implementation that extracts organization and user ids from the bearer
token or uses test defaults. Accepted token formats:

- ``<org_id>:<user_id>`` - scoped to one organization
- ``<org_id>:<user_id>:superadmin`` - scoped superadmin
- ``global:<user_id>`` - superadmin in global mode (no organization filter)
"""

import uuid
from typing import Annotated

from fastapi import Header, HTTPException, status

from backend.app.db.context import OrganizationContext

DEFAULT_ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
DEFAULT_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")

GLOBAL_PREFIX = "global"
SUPERADMIN_FLAG = "superadmin"


class InvalidTokenError(ValueError):
    """Bearer token could not be parsed."""

    pass


def parse_bearer_token(authorization: str) -> OrganizationContext:
    """Parse an Authorization header value into a context.

    Raises:
        InvalidTokenError: If the header or token format is invalid.
    """
    if not authorization.startswith("Bearer "):
        raise InvalidTokenError("Invalid authorization header format")

    token = authorization[7:].strip()  # Strip "Bearer "
    if ":" not in token:
        raise InvalidTokenError("Invalid bearer token (JWT validation not yet implemented)")

    parts = token.split(":")
    try:
        if parts[0] == GLOBAL_PREFIX and len(parts) == 2:
            return OrganizationContext.global_context(uuid.UUID(parts[1]))

        if len(parts) == 2:
            return OrganizationContext.scoped(uuid.UUID(parts[0]), uuid.UUID(parts[1]))

        if len(parts) == 3 and parts[2] == SUPERADMIN_FLAG:
            return OrganizationContext.scoped(
                uuid.UUID(parts[0]), uuid.UUID(parts[1]), is_superadmin=True
            )
    except ValueError as e:
        raise InvalidTokenError("Invalid token format (expected org_id:user_id)") from e

    raise InvalidTokenError("Invalid token format (expected org_id:user_id)")


async def get_current_context(
    authorization: Annotated[str | None, Header()] = None,
) -> OrganizationContext:
    """Extract organization context from authorization header.

    Args:
        authorization: Authorization header (e.g., "Bearer <token>")

    Returns:
        OrganizationContext for the caller; test defaults when no header

    Raises:
        HTTPException: If authorization is invalid
    """
    if not authorization:
        # Local development: allow no auth, use test IDs
        return OrganizationContext.scoped(DEFAULT_ORG_ID, DEFAULT_USER_ID)

    try:
        return parse_bearer_token(authorization)
    except InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
