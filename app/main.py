import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool

from app.config import settings
from app.core.logging_config import configure_logging
from app.monitoring import metrics
from app.runtime import IngestionRuntime
from app.services.health_service import get_detailed_health

logger = logging.getLogger(__name__)


def create_app(runtime_factory: Callable[[], IngestionRuntime] = IngestionRuntime.build) -> FastAPI:
    """Ops surface of the ingestion service: lifecycle, health and metrics only."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = runtime_factory()
        app.state.runtime = runtime
        await run_in_threadpool(runtime.start)
        try:
            yield
        finally:
            await run_in_threadpool(runtime.stop)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Outbox relay, feed ingestion workers and schedules for the DW directory.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
    )

    # Monitoring endpoints (internal use)
    if settings.EXPOSE_METRICS:
        app.include_router(
            metrics.router,
            prefix="/internal",
            tags=["monitoring"]
        )

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.APP_VERSION,
        }

    @app.get("/health/detailed")
    async def detailed_health_check(request: Request):
        return await run_in_threadpool(get_detailed_health, request.app.state.runtime)

    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()
