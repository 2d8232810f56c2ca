"""HTTP layer — FastAPI router and application factory."""

from waypoint.http._routes import (
    router,
    IDEMPOTENCY_HEADER,
    get_return_requests,
    key_headers,
    status_for,
    error_response,
)
from waypoint.http._app import build_return_requests, create_app

__all__ = (
    "router",
    "IDEMPOTENCY_HEADER",
    "get_return_requests",
    "key_headers",
    "status_for",
    "error_response",
    "build_return_requests",
    "create_app",
)
