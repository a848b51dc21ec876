"""FastAPI application entry point."""
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from audience import __version__
from audience.cache import cache
from audience.config import settings
from audience.database import engine
from audience.errors import InvalidInputError, UnauthorizedError
from audience.middleware.logging import LoggingMiddleware, setup_logging
from audience.middleware.metrics import MetricsMiddleware
from audience.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse
from audience.services.builders import build_event_store
from audience.services.identity import detect_capabilities

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Detect optional capabilities once at startup; release connections on shutdown."""
    logger.info("application_starting", env=settings.app_env)
    if settings.otel_enabled:
        from audience.tracing import setup_tracing

        setup_tracing(app, engine)

    app.state.capabilities = await detect_capabilities(build_event_store())
    logger.info("capabilities_detected", identity_resolution=app.state.capabilities.resolution_mode)
    yield

    logger.info("application_shutting_down")
    await cache.close()
    await engine.dispose()


app = FastAPI(
    title="Audience Metrics",
    description="Identity resolution, unique-user snapshots, activation funnels and weekly digests",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

# Mount Prometheus metrics endpoint
app.mount("/metrics", make_asgi_app())


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")


def _error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: Optional[list[ErrorDetail]] = None,
    remediation: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        details=details,
        remediation=remediation,
        request_id=_request_id(request),
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


# Exception handlers with structured error responses
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Returns 422 with field-level validation errors."""
    details = [
        ErrorDetail(
            code=ErrorCode.VALIDATION_ERROR,
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
            value=error.get("input"),
        )
        for error in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, error_count=len(details))
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ValidationError",
        "Request validation failed",
        details=details,
        remediation="Check the API documentation for correct request format at /docs",
    )


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    """Returns 400 for malformed dates, ranges and segments."""
    logger.warning("invalid_input", path=request.url.path, field=exc.field, error=str(exc))
    return _error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        "InvalidInput",
        str(exc),
        details=[ErrorDetail(code=exc.code, message=str(exc), field=exc.field, value=exc.value)],
        remediation=REMEDIATION_HINTS.get(exc.code),
    )


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError) -> JSONResponse:
    """Returns 401 for cron triggers without valid credentials."""
    return _error_response(
        request,
        status.HTTP_401_UNAUTHORIZED,
        "Unauthorized",
        str(exc) or "Unauthorized",
        remediation=REMEDIATION_HINTS.get(ErrorCode.UNAUTHORIZED),
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Returns 503 for database errors."""
    logger.error(
        "database_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    # Don't expose internal database details in production
    error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)
    return _error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DatabaseError",
        "A database error occurred",
        details=[ErrorDetail(code=ErrorCode.DATABASE_ERROR, message=error_message)],
        remediation=REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all other uncaught exceptions.

    Logs the stack trace and returns a safe error message.
    """
    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
        stack_trace=traceback.format_exc(),
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "InternalServerError",
        "An unexpected error occurred",
        details=[
            ErrorDetail(
                code=ErrorCode.INTERNAL_ERROR,
                message=str(exc) if settings.debug else "Internal server error",
            )
        ],
        remediation="Please contact support with the request ID",
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Audience Metrics",
        "version": __version__,
        "status": "operational",
        "docs": "/docs",
    }


# Include routers
from audience.api.v1 import analytics, cron, health  # noqa: E402

app.include_router(health.router, tags=["Health"])
app.include_router(cron.router, prefix="/v1", tags=["Cron"])
app.include_router(analytics.router, prefix="/v1", tags=["Analytics"])
