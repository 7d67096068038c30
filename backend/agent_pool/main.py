"""FastAPI application entrypoint and router wiring for the pool manager."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from agent_pool.api.deps import build_pool_services
from agent_pool.api.infra import router as infra_router
from agent_pool.api.metrics import router as metrics_router
from agent_pool.api.pool import router as pool_router
from agent_pool.core.config import settings
from agent_pool.core.error_handling import install_error_handling
from agent_pool.core.logging import configure_logging, get_logger
from agent_pool.db.session import async_session_maker, init_db
from agent_pool.schemas.health import HealthStatusResponse

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

configure_logging()
logger = get_logger(__name__)
OPENAPI_TAGS = [
    {
        "name": "health",
        "description": (
            "Service liveness/readiness probes used by infrastructure and runtime checks."
        ),
    },
    {
        "name": "pool",
        "description": "Warm-pool counts, claims, replenishment, drain, and instance teardown.",
    },
    {
        "name": "infra",
        "description": (
            "Internal resource layer: compute services, attached tools, and the tool registry."
        ),
    },
    {
        "name": "metrics",
        "description": "Prometheus exposition of claim, tick, and pool occupancy metrics.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize the store and start the reconciliation loop before serving."""
    logger.info(
        "app.lifecycle.starting environment=%s pool_environment=%s db_auto_migrate=%s",
        settings.environment,
        settings.pool_environment,
        settings.db_auto_migrate,
    )
    await init_db()
    if getattr(app.state, "pool", None) is None:
        app.state.pool = build_pool_services(settings, async_session_maker)
    scheduler = app.state.pool.scheduler
    if settings.tick_enabled:
        scheduler.start()
    else:
        logger.info("app.lifecycle.tick_disabled")
    logger.info("app.lifecycle.started")
    try:
        yield
    finally:
        await scheduler.stop()
        logger.info("app.lifecycle.stopped")


app = FastAPI(
    title="Agent Pool API",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=OPENAPI_TAGS,
)

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info("app.cors.enabled origins_count=%s", len(origins))
else:
    logger.info("app.cors.disabled")

install_error_handling(app)


@app.get(
    "/health",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Health Check",
    description="Lightweight liveness probe endpoint.",
    responses={
        status.HTTP_200_OK: {
            "description": "Service is alive.",
            "content": {"application/json": {"example": {"ok": True}}},
        }
    },
)
def health() -> HealthStatusResponse:
    """Lightweight liveness probe endpoint."""
    return HealthStatusResponse(ok=True)


@app.get(
    "/healthz",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Health Alias Check",
    description="Alias liveness probe endpoint for platform compatibility.",
)
def healthz() -> HealthStatusResponse:
    return HealthStatusResponse(ok=True)


@app.get(
    "/readyz",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Readiness Check",
    description="Readiness probe; ready once the pool services are wired.",
    responses={
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Pool services not started."},
    },
)
def readyz() -> HealthStatusResponse:
    if getattr(app.state, "pool", None) is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return HealthStatusResponse(ok=True)


app.include_router(pool_router)
app.include_router(infra_router)
app.include_router(metrics_router)

logger.debug("app.routes.registered count=%s", len(app.routes))
