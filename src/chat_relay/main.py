"""
Chat Relay - streaming relay between the chat UI and an LLM provider.

This service accepts chat requests from the browser, forwards them to an
OpenAI-compatible streaming chat completions endpoint (Azure-hosted models
by default), re-emits the completion as Server-Sent Events and persists both
sides of the conversation through the message store.

Endpoints:
    Chat:
        - POST /api/chat - Relay a streaming chat completion

    Health:
        - GET /health - Health check
        - GET /health/live - Liveness probe
        - GET /health/ready - Readiness probe (database when SQL store is active)

    Internal:
        - GET /internal/metrics - SLO counters
        - GET /internal/audit - Recent audit events

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chat_relay import __version__
from chat_relay.config import RelaySettings, get_settings
from chat_relay.db.engine import check_db_health, close_db, init_db
from chat_relay.routers import chat
from chat_relay.services.errors import (
    AuthenticationError,
    StreamError,
    UpstreamError,
    ValidationError,
    authentication_error_response,
    create_error_response,
    internal_error,
    upstream_error_response,
    validation_error_response,
)
from chat_relay.services.http_client import close_client
from chat_relay.services.observability import get_audit_events, get_metric_snapshot


# ============================================================================
# Logging Configuration
# ============================================================================

def configure_logging(settings: RelaySettings) -> None:
    """
    Configure structured logging with structlog.

    Sets up structlog with JSON output for production and pretty printing
    for development (when LOG_FORMAT=console).

    Args:
        settings: Relay settings carrying log level and format
    """
    log_level = settings.log_level.upper()

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level, logging.INFO),
    )

    # Shared processors
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "console":
        renderers: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging before creating logger
configure_logging(get_settings())
logger = structlog.get_logger("chat-relay")


# ============================================================================
# Application Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup and shutdown events.

    Startup:
        - Creates message tables when the SQL store is active

    Shutdown:
        - Closes the upstream HTTP client
        - Closes database connections
    """
    settings = get_settings()
    logger.info(
        "chat_relay.startup",
        store_backend=settings.message_store_backend,
        upstream_url=settings.upstream_url,
        credential_configured=bool(settings.upstream_api_key),
    )

    if settings.message_store_backend == "sql":
        try:
            logger.info("chat_relay.database.init")
            await init_db(settings)
            logger.info("chat_relay.database.ready")
        except Exception as e:
            logger.error("chat_relay.database.error", error=str(e))
            raise

    logger.info("chat_relay.ready")

    yield

    logger.info("chat_relay.shutdown")

    await close_client()
    await close_db()

    logger.info("chat_relay.shutdown.complete")


# ============================================================================
# Application Instance
# ============================================================================

app = FastAPI(
    title="Chat Relay",
    description="Streaming chat relay over an OpenAI-compatible provider",
    version=__version__,
    lifespan=lifespan,
)


# ============================================================================
# CORS Middleware
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Response-Time"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Map request validation failures to 400 responses."""
    logger.warning(
        "chat_relay.validation_error",
        path=request.url.path,
        kind=exc.kind,
        fields=exc.fields,
    )
    return validation_error_response(exc)


@app.exception_handler(AuthenticationError)
async def authentication_exception_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    """Map missing or mismatched caller identity to 401 responses."""
    logger.warning("chat_relay.authentication_error", path=request.url.path, kind=exc.kind)
    return authentication_error_response(exc)


@app.exception_handler(UpstreamError)
@app.exception_handler(StreamError)
async def upstream_exception_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    """Map provider failures raised before streaming began to 500 responses."""
    logger.warning(
        "chat_relay.upstream_error",
        path=request.url.path,
        kind=exc.kind,
        details=getattr(exc, "details", exc.message),
    )
    return upstream_error_response(exc)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render framework HTTP errors (404, 405, ...) in the relay error format."""
    return create_error_response(
        message=str(exc.detail),
        kind="http_error",
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled errors.

    Logs the full exception and returns a safe error response without
    leaking internal details.
    """
    logger.exception(
        "chat_relay.unhandled_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return internal_error()


# ============================================================================
# Request Logging Middleware
# ============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next: Callable):
    """
    Log every request with timing information.

    For streaming responses the duration covers time to first byte; the
    relay logs stream completion separately.
    """
    request_id = request.headers.get("X-Request-ID", "-")
    start_time = time.perf_counter()

    # Bind request context for all logs in this request
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
    )

    logger.info("chat_relay.request.start")

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    logger.info(
        "chat_relay.request.complete",
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )

    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

    return response


# ============================================================================
# Routers
# ============================================================================

app.include_router(chat.router, tags=["chat"])


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint for service monitoring."""
    return {
        "status": "ok",
        "service": "chat-relay",
        "version": __version__,
    }


@app.get("/health/ready")
async def readiness_check():
    """
    Readiness check endpoint.

    Performs a real database connectivity check when the SQL message store
    is active; the in-memory store is always ready.

    Returns:
        dict: Readiness status with component health.
        JSONResponse 503 if the database is unreachable.
    """
    settings = get_settings()
    if settings.message_store_backend != "sql":
        return {"status": "ready", "checks": {"message_store": "memory"}}

    if not await check_db_health():
        logger.warning("readiness_check.database_unhealthy")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "checks": {"database": "unreachable"},
            },
        )

    return {"status": "ready", "checks": {"database": "ok"}}


@app.get("/health/live")
async def liveness_check():
    """Liveness check: the service is running and responsive."""
    return {"status": "alive"}


@app.get("/internal/metrics")
async def internal_metrics() -> dict:
    """Internal SLO metrics snapshot."""
    return {"metrics": get_metric_snapshot()}


@app.get("/internal/audit")
async def internal_audit(limit: int = 100) -> dict:
    """Internal audit event buffer snapshot."""
    return {"events": get_audit_events(limit=limit)}
