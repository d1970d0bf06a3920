"""
Request ID middleware.

Adds a correlation ID to every request and binds it into the structlog
context so launch and callback log lines for one request can be grouped.
"""
import uuid
from typing import Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a unique request ID to every request.

    The request ID is taken from the X-Request-ID header when present,
    otherwise generated. It is stored on request.state, returned in the
    X-Request-ID response header and bound to the structlog contextvars for
    the duration of the request.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers["X-Request-ID"] = request_id
        return response


def get_request_id(request: Request) -> str:
    """Return the request ID assigned by RequestIDMiddleware."""
    return getattr(request.state, "request_id", "unknown")
