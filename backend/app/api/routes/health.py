"""Health check endpoints.

- /health answers as long as the process is up
- /healthz checks the deferred store database (SQL backend) and the Redis
  lanes (when configured) and reports worker pool state; a pool stopped by
  a store failure marks the service degraded
"""

import json
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, Request, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.config import Settings

router = APIRouter()


async def check_db(engine: AsyncEngine | None) -> tuple[bool, str]:
    """Check database connectivity.

    Returns:
        (is_ok, status_message)
    """
    if engine is None:
        return (True, "not_configured")

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return (True, "ok")
    except Exception as e:
        return (False, f"error: {type(e).__name__}")


async def check_redis(settings: Settings) -> tuple[bool, str]:
    """Check Redis connectivity.

    Returns:
        (is_ok, status_message)
    """
    if not settings.redis_url:
        return (True, "not_configured")

    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
        return (True, "ok")
    except Exception as e:
        return (False, f"error: {type(e).__name__}")
    finally:
        await client.aclose()


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check for Docker/k8s.

    Returns:
        200 OK always (application is running)
    """
    return {"status": "ok"}


@router.get("/healthz", response_model=None)
async def healthz(request: Request) -> dict[str, Any] | Response:
    """Health check endpoint.

    Returns:
        200 with component status if core systems ok
        503 if the store database or Redis is unreachable, or a lane
        consumer stopped on a store failure
    """
    services = request.app.state.deferred

    db_ok, db_status = await check_db(services.engine)
    redis_ok, redis_status = await check_redis(services.settings)

    pool = services.pool
    workers_ok = pool.failure is None
    if not workers_ok:
        workers_status = f"failed: {type(pool.failure).__name__}"
    else:
        workers_status = "running" if pool.running else "stopped"

    core_ok = db_ok and redis_ok and workers_ok

    response_body = {
        "status": "ok" if core_ok else "degraded",
        "components": {
            "db": db_status,
            "redis": redis_status,
            "workers": workers_status,
        },
    }

    if not core_ok:
        return Response(
            content=json.dumps(response_body),
            status_code=503,
            media_type="application/json",
        )

    return response_body
