import os

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.tracing import (
    configure_tracing,
    instrument_fastapi,
    shutdown_tracing,
    get_trace_id_from_context,
    record_exception,
    set_span_status,
    StatusCode,
)
from .routes import health, ai, metrics, admin
from .core.cache import initialize_redis, close_redis
from .services.ai.config import get_settings
from .services.ai.engine import reset_ai_engine

# Configure structured logging
# Use JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

# Configure distributed tracing (OTLP export only when OTEL_EXPORTER_OTLP_ENDPOINT is set)
configure_tracing()

app = FastAPI(
    title="AI Orchestration API",
    description="Multi-provider AI request orchestration with tiering, escalation and budgets",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

# Instrument FastAPI with OpenTelemetry (creates automatic spans for HTTP requests)
instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    logger.info("app_startup_started")

    redis_initialized = await initialize_redis()
    if redis_initialized:
        logger.info("app_startup_redis_ready")
    else:
        logger.warning(
            "app_startup_redis_unavailable",
            message="Redis not available. Running without shared cache, history or budgets; rate limits fail open.",
        )

    # Engine is built lazily on first use, after Redis is known
    reset_ai_engine()

    settings = get_settings()
    configured = [p.name for p in settings.fallback_providers()]
    if configured:
        logger.info("app_startup_providers_ready", providers=configured)
    else:
        logger.warning(
            "app_startup_no_providers",
            message="No provider API keys configured. AI requests will fail with all_providers_failed.",
        )

    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    shutdown_tracing()
    await close_redis()
    logger.info("app_shutdown_completed")


def error_response(status_code: int, detail) -> JSONResponse:
    """JSON error body carrying the request's trace ID (body and X-Trace-ID header)."""
    trace_id = get_trace_id() or get_trace_id_from_context()
    response = JSONResponse(
        status_code=status_code,
        content={"detail": detail, "status_code": status_code, "trace_id": trace_id},
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Engine failures arrive with a {kind, message, details} detail (see app.routes.ai)."""
    kind = exc.detail.get("kind") if isinstance(exc.detail, dict) else None
    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, kind or str(exc.detail))

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "http_exception",
        status_code=exc.status_code,
        kind=kind,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return error_response(exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    record_exception(exc)
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return error_response(500, "Internal server error")


app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(ai.router, prefix="/ai", tags=["AI"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
