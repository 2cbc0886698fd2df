"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- caller ("operator" with user_id from the JWT, or "bridge")
- tenant_id (from context if available)
- request_id (UUID generated per request, added to response as X-Request-ID)

request_id and caller are bound into structlog contextvars for the life of
the request, so ledger service events (ingestion.completed,
dispatch.batch_completed, ...) carry them too.

Uses structlog for structured JSON logging in production and
human-readable console output in development.
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings
from src.app.core.tenant import get_current_tenant

logger = structlog.get_logger(__name__)

BRIDGE_PATH_PREFIX = "/api/v1/bridge"


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _operator_user_id(request: Request) -> str | None:
    """Best-effort user id from the bearer token; never fails the request."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(
            auth_header[7:],
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None
    return payload.get("sub")


def _current_tenant_id() -> str | None:
    # Unset for health/docs/tenants routes and for bridge routes after the handler returns
    try:
        return get_current_tenant().tenant_id
    except RuntimeError:
        return None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that logs every request with caller, tenant context and timing.

    Generates a unique X-Request-ID for each request and includes it in
    both the log entry and the response headers.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.monotonic()

        if request.url.path.startswith(BRIDGE_PATH_PREFIX):
            caller, user_id = "bridge", None
        else:
            caller, user_id = "operator", _operator_user_id(request)

        with structlog.contextvars.bound_contextvars(request_id=request_id, caller=caller):
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "request_error",
                    method=request.method,
                    path=request.url.path,
                    status_code=500,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                    tenant_id=_current_tenant_id(),
                    user_id=user_id,
                )
                raise

            response.headers["X-Request-ID"] = request_id

            if response.status_code >= 500:
                log_method = logger.error
            elif response.status_code >= 400:
                log_method = logger.warning
            else:
                log_method = logger.info

            log_method(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                tenant_id=_current_tenant_id(),
                user_id=user_id,
            )

        return response
