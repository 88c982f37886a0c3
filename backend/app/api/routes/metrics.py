"""Prometheus metrics endpoint."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint.

    Exposes all registered Prometheus metrics including:
    - deferred_decisions_total{outcome, reason}
    - deferred_executions_total{lane, outcome}
    - deferred_execution_latency_ms{lane, outcome}
    - deferred_enqueue_failures_total{lane}
    - deferred_cleanup_deleted_total
    """
    metrics_output = generate_latest()
    return Response(content=metrics_output, media_type=CONTENT_TYPE_LATEST)
