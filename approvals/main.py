# ==== APPROVAL WORKFLOWS MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for the approval workflow service.

This module wires the workflow engine, the escalation sweeper, middleware,
observability and error handling into one application.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy import text

from approvals.errors import InvalidStepState, WorkflowError
from approvals.middleware.correlation import CorrelationMiddleware
from approvals.observability.logging import get_logger, init_logging
from approvals.observability.metrics import init_metrics, metrics_router
from approvals.observability.tracing import init_tracing
from approvals.routes import workflows
from approvals.services.escalation import EscalationScheduler
from approvals.services.factory import open_workflow_engine
from approvals.services.workflow_engine import WorkflowEngine
from approvals.settings import settings
from approvals.storage.db import close_database, get_session
from approvals.storage import db


logger = get_logger(__name__)


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown operations.

    Initializes logging, tracing and the database, builds the workflow
    engine unless one was injected, and runs the escalation sweeper for
    the lifetime of the application.

    Args:
        app (FastAPI): FastAPI application instance

    Yields:
        None: Control back to FastAPI during application runtime
    """
    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    init_tracing(settings.SERVICE_NAME)

    owns_database = app.state.engine is None
    if owns_database:
        app.state.engine = await open_workflow_engine(settings)

    scheduler = None
    if settings.ESCALATION_ENABLED:
        scheduler = EscalationScheduler.from_settings(app.state.engine, settings)
        scheduler.start()
    app.state.scheduler = scheduler

    logger.info("Approval workflow service started", environment=settings.APP_ENV)

    yield

    # --► SHUTDOWN SEQUENCE
    if scheduler is not None:
        await scheduler.stop()
    await app.state.engine.notifier.aclose()
    if owns_database:
        await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app(engine: WorkflowEngine | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine (WorkflowEngine | None): Prebuilt engine; when omitted the
            lifespan builds one on the configured database

    Returns:
        FastAPI: Fully configured FastAPI application instance
    """
    app = FastAPI(
        title="Approval Workflows",
        description="Multi-step approval workflows with escalation and audit timeline",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None
    )
    app.state.engine = engine
    app.state.scheduler = None

    # --► OBSERVABILITY INITIALIZATION
    init_metrics(app)

    # --► MIDDLEWARE STACK CONFIGURATION
    # ⚠️ CORS middleware must be added FIRST before other middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )
    app.add_middleware(CorrelationMiddleware)

    # --► HEALTH CHECK ENDPOINTS
    _register_health_endpoints(app)

    # --► ROUTER REGISTRATION
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(workflows.router, prefix="/workflows", tags=["workflows"])

    # --► EXCEPTION HANDLERS
    _register_exception_handlers(app)

    # --► OPENTELEMETRY INSTRUMENTATION
    FastAPIInstrumentor.instrument_app(app)

    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


def _register_health_endpoints(app: FastAPI) -> None:
    """
    Register health check endpoints for liveness and readiness probes.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        """Liveness probe endpoint for container orchestration."""
        return {
            "status": "ok",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> JSONResponse:
        """
        Readiness probe endpoint for container orchestration.

        Checks the database when the application owns one.

        Returns:
            JSONResponse: Readiness status, 503 when the database is down
        """
        database_status = "not_configured"
        if db.SessionLocal is not None:
            try:
                async with get_session() as session:
                    await session.execute(text("SELECT 1"))
                database_status = "connected"
            except Exception as exc:
                logger.warning("Readiness database check failed", error=str(exc))
                database_status = "disconnected"

        ready = database_status != "disconnected"
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "service": settings.SERVICE_NAME,
                "environment": settings.APP_ENV,
                "database_status": database_status,
            }
        )


# ==== EXCEPTION HANDLERS ==== #


def _error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
    content["correlation_id"] = getattr(request.state, 'correlation_id', 'unknown')
    return JSONResponse(status_code=status_code, content=content)


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers mapping engine errors to HTTP answers.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.exception_handler(InvalidStepState)
    async def invalid_state_handler(request: Request, exc: InvalidStepState) -> JSONResponse:
        """
        Answer state conflicts with 409 and the current request.

        A repeated approve or reject of the same step answers 200 with the
        unchanged request.
        """
        current = exc.request.model_dump(mode="json") if exc.request is not None else None
        if exc.duplicate and current is not None:
            return JSONResponse(status_code=200, content=current)

        content = exc.to_dict()
        content["request"] = current
        return _error_response(request, exc.status_code, content)

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Workflow operation failed",
                code=exc.code,
                error=exc.message,
                path=request.url.path,
            )
        return _error_response(request, exc.status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request,
        exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed bodies and unknown enum values answer 400."""
        return _error_response(request, 400, {
            "error": "ValidationError",
            "message": "Request validation failed",
            "code": "VALIDATION_ERROR",
            "retryable": False,
            "details": jsonable_errors(exc),
        })

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Args:
            request (Request): HTTP request that caused the exception
            exc (Exception): Exception that occurred

        Returns:
            JSONResponse: Standardized error response
        """
        logger.exception("Unhandled error", path=request.url.path, error=str(exc))
        return _error_response(request, 500, {
            "error": "Internal server error",
            "message": "An unexpected error occurred",
            "code": "INTERNAL_ERROR",
        })


def jsonable_errors(exc: RequestValidationError) -> list:
    """Validation error details without non-serializable context."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


# ==== APPLICATION INSTANCE ==== #


app = create_app()
