"""API middleware: tenant resolution and structured request logging."""

from src.app.api.middleware.logging import LoggingMiddleware
from src.app.api.middleware.tenant import TenantAuthMiddleware

__all__ = ["LoggingMiddleware", "TenantAuthMiddleware"]
