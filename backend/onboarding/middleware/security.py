"""Response hardening for the onboarding API.

Every onboarding response can carry a bearer token, a CSRF token or
decrypted wizard state, so none of them may be cached by the browser or an
intermediary.
"""

from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse

from onboarding.config import settings

NO_STORE_PREFIXES = ("/api/onboarding",)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        # Force HTTPS for 1 year, include subdomains
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"

        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"

        return response


class HTTPSRedirectMiddleware(BaseHTTPMiddleware):
    """Redirect HTTP requests to HTTPS (production only)."""

    def __init__(self, app, force_https: bool = False):
        super().__init__(app)
        self.force_https = force_https or settings.is_production

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.force_https:
            return await call_next(request)

        # Behind a TLS-terminating proxy the scheme arrives in a header
        scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
        if scheme == "http":
            return RedirectResponse(
                url=str(request.url.replace(scheme="https")),
                status_code=301,
            )

        return await call_next(request)
