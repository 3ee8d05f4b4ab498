"""
Self-Healing Engine - Main Application
======================================

FastAPI application exposing job submission, approval decisions,
rollback and read queries over the engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from healing_shared.constants import ActionType, Channel
from healing_shared.schemas.jobs import ApprovalMaintenanceJob, LearningAnalysisJob, PatternScanJob
from healing_shared.utils.logging import setup_logging, get_logger, set_correlation_id

from healing_engine.config import get_settings
from healing_engine.api.routes import router as api_router
from healing_engine.core.adapters import (
    DeliveryRouter,
    HttpPatternStore,
    InMemoryDelivery,
    InMemoryDirectory,
    InMemoryOperations,
    InMemoryPatternStore,
    InMemoryWorkItems,
    WebhookDelivery,
)
from healing_engine.core.engine import build_engine
from healing_engine.core.job_runner import JobRunner


settings = get_settings()

setup_logging(
    service_name=settings.service_name,
    log_level=settings.log_level,
    json_output=settings.log_json
)

logger = get_logger(__name__)


def _schedule_recurring(runner: JobRunner) -> None:
    for organization_id in settings.scheduled_organizations:
        runner.schedule_recurring(
            PatternScanJob(
                organization_id=organization_id,
                time_window_minutes=settings.scan_window_minutes,
                auto_execute=settings.auto_execute,
            ),
            settings.pattern_scan_interval_seconds,
        )
        runner.schedule_recurring(
            ApprovalMaintenanceJob(organization_id=organization_id),
            settings.approval_maintenance_interval_seconds,
        )
        runner.schedule_recurring(
            LearningAnalysisJob(
                organization_id=organization_id,
                analysis_window_days=settings.learning_window_days,
            ),
            settings.learning_analysis_interval_seconds,
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    logger.info(
        f"Starting {settings.service_name} v{settings.service_version}",
        extra={
            "version": settings.service_version,
            "environment": settings.environment.value
        }
    )

    if settings.pattern_store_url:
        pattern_store = HttpPatternStore(settings.pattern_store_url)
    else:
        pattern_store = InMemoryPatternStore()
    webhook = WebhookDelivery(
        timeout_seconds=settings.webhook_timeout_seconds,
        require_https=settings.is_production,
    )
    delivery = DeliveryRouter([
        InMemoryDelivery(Channel.EMAIL),
        InMemoryDelivery(Channel.CHAT),
        InMemoryDelivery(Channel.IN_APP),
        webhook,
    ])

    app.state.pattern_store = pattern_store
    app.state.directory = InMemoryDirectory()
    app.state.delivery = delivery
    app.state.work_items = InMemoryWorkItems()
    app.state.operations = InMemoryOperations()

    engine = build_engine(
        settings,
        pattern_store,
        app.state.directory,
        delivery,
        app.state.work_items,
        app.state.operations,
    )
    runner = JobRunner.from_settings(engine, settings)
    app.state.engine = engine
    app.state.job_runner = runner

    if settings.scheduler_enabled:
        _schedule_recurring(runner)

    logger.info(
        f"Engine initialized with {len(engine.registry.action_types)} action types",
        extra={"scheduler_enabled": settings.scheduler_enabled}
    )

    yield

    logger.info("Shutting down Self-Healing Engine...")
    await runner.shutdown()
    await webhook.close()
    await engine.registry.get(ActionType.CUSTOM).close()
    if isinstance(pattern_store, HttpPatternStore):
        await pattern_store.close()


app = FastAPI(
    title="Self-Healing Engine",
    description="Closed-loop detection, gated remediation and approvals",
    version=settings.service_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID")
    if not correlation_id:
        correlation_id = str(uuid.uuid4())

    set_correlation_id(correlation_id)
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id

    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_server_error", "message": str(exc) if settings.debug else "An error occurred"}
    )


@app.get("/health", tags=["health"])
async def health_check():
    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": settings.service_version
    }


@app.get("/ready", tags=["health"])
async def readiness_check(request: Request):
    engine = request.app.state.engine
    return {
        "status": "ready",
        "service": settings.service_name,
        "action_types": [t.value for t in engine.registry.action_types],
        "channels": [c.value for c in request.app.state.delivery.channels],
        "scheduler_enabled": settings.scheduler_enabled
    }


app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("healing_engine.main:app", host=settings.host, port=settings.port, reload=settings.debug)
