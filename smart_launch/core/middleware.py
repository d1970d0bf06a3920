"""
Custom middleware
"""

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

# Responses on these paths carry state values, codes or session data
NO_STORE_PREFIXES = ("/launch", "/callback", "/api/", "/index.html", "/logout")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses

    No X-Frame-Options: SMART apps are commonly embedded in an EHR frame.
    Referrer-Policy no-referrer keeps codes and state out of Referer headers.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"

        return response
