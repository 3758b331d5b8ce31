"""
Notification Service API.

FastAPI application that accepts notifications from recipients and trusted
backends, stores them and fans them out over push, email, in-app and socket.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from notification_service.config import Settings, settings, validate_security_settings
from notification_service.database import init_db
from notification_service.errors import ServiceError
from notification_service.logging_config import configure_logging
from notification_service.middleware.rate_limit import limiter
from notification_service.routers.admin import router as admin_router
from notification_service.routers.health import router as health_router
from notification_service.routers.notifications import router as notifications_router
from notification_service.routers.realtime import router as realtime_router
from notification_service.routers.system import router as system_router
from notification_service.runtime import Runtime
from notification_service.schemas.envelope import error_response, request_id_of

# Import models to register them with Base.metadata
from notification_service.models import IdempotencyKey, Notification  # noqa: F401

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "BAD_REQUEST",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_409_CONFLICT: "CONFLICT",
    status.HTTP_429_TOO_MANY_REQUESTS: "RATE_LIMITED",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    config: Settings = app.state.settings
    configure_logging(config)
    validate_security_settings(config)

    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        await init_db(config.database_url)
        runtime = Runtime(config)
        app.state.runtime = runtime
    await runtime.start()
    logger.info("Notification service started (environment=%s)", config.environment)
    try:
        yield
    finally:
        await runtime.stop()
        logger.info("Notification service stopped")


# --- Exception Handlers ---


def _sanitize_error_detail(error: dict[str, Any]) -> dict[str, Any]:
    """Reduce a pydantic error to ``{field, message, type}``."""
    location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
    return {
        "field": ".".join(location),
        "message": error.get("msg", "Invalid value"),
        "type": error.get("type"),
    }


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Pydantic validation errors become 400 with field-level detail."""
    errors = [_sanitize_error_detail(e) for e in exc.errors()]
    if errors:
        first = errors[0]
        message = f"{first['field']}: {first['message']}" if first["field"] else first["message"]
    else:
        message = "Validation failed"
    return error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        "VALIDATION_ERROR",
        message,
        errors=errors,
    )


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request %s failed: %s", request_id_of(request), exc.message)
    return error_response(
        request,
        exc.status_code,
        exc.code,
        exc.message,
        errors=exc.details,
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    limit = getattr(getattr(exc, "limit", None), "limit", None)
    retry_after = limit.get_expiry() if limit is not None else 60
    logger.warning(
        "Rate limit exceeded on %s from %s",
        request.url.path,
        request.client.host if request.client else "-",
    )
    response = error_response(
        request,
        status.HTTP_429_TOO_MANY_REQUESTS,
        "RATE_LIMITED",
        f"Rate limit exceeded: {exc.detail}",
        retryAfter=retry_after,
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return error_response(
        request,
        exc.status_code,
        _STATUS_CODES.get(exc.status_code, "HTTP_ERROR"),
        message,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with consistent error format."""
    request_id = request_id_of(request)
    logger.exception("Unhandled error for request %s", request_id, exc_info=exc)
    config: Settings = request.app.state.settings
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        "An unexpected error occurred",
        error=repr(exc) if config.is_development else None,
    )


# --- Application ---


def create_app(config: Settings | None = None, runtime: Runtime | None = None) -> FastAPI:
    """
    Build the application.

    A prebuilt ``runtime`` skips migrations and component construction at
    startup (tests pass one in).
    """
    config = config or settings
    app = FastAPI(
        title="Notification Service API",
        description="Multi-tenant notification storage and delivery",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = config
    if runtime is not None:
        app.state.runtime = runtime

    # Add rate limiter state
    app.state.limiter = limiter

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Reuse the caller's request id or mint one."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    app.include_router(health_router)
    app.include_router(notifications_router)
    app.include_router(system_router)
    app.include_router(admin_router)
    app.include_router(realtime_router)
    return app


app = create_app()
