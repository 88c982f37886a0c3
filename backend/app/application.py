"""Application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from backend.app.api.routes.deferred import router as deferred_router
from backend.app.api.routes.health import router as health_router
from backend.app.api.routes.metrics import router as metrics_router
from backend.app.config import Settings, get_settings
from backend.app.deferred.service import DeferredServices, build_deferred_services
from backend.app.middleware.deferred import DeferredRequestMiddleware


def create_app(
    settings: Settings | None = None,
    *,
    services: DeferredServices | None = None,
    start_workers: bool | None = None,
) -> FastAPI:
    """Create the application with the deferred request engine attached.

    Args:
        settings: Settings (default: cached environment settings)
        services: Pre-built engine components (tests)
        start_workers: Run lane consumers and maintenance in the lifespan
            (default: ``deferred_start_workers``)

    Returns:
        Configured FastAPI application

    Raises:
        InvalidEndpointPatternError: If a configured deferred endpoint is malformed.
    """
    settings = settings or get_settings()
    run_workers = settings.deferred_start_workers if start_workers is None else start_workers

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        deferred: DeferredServices = app.state.deferred
        if run_workers:
            await deferred.pool.start()
            deferred.maintenance_loop.start()
        try:
            yield
        finally:
            await deferred.close()

    app = FastAPI(title="Blafast API", version="0.1.0", lifespan=lifespan)
    app.state.deferred = services or build_deferred_services(settings, app)

    app.add_middleware(DeferredRequestMiddleware)

    # Register routes
    app.include_router(health_router, tags=["health"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(deferred_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {"message": "Blafast API", "version": "0.1.0"}

    return app
