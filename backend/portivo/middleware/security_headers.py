"""
Security headers middleware.

Every response gets the baseline browser hardening headers. API responses
carry tenant data, so they are also marked ``no-store``; HSTS is only sent in
production, where the app is always behind TLS.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from portivo.config import settings

BASELINE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}
HSTS_VALUE = "max-age=63072000; includeSubDomains"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, force_hsts: bool | None = None):
        super().__init__(app)
        self.hsts = settings.environment == "production" if force_hsts is None else force_hsts

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        headers = response.headers
        for name, value in BASELINE_HEADERS.items():
            headers.setdefault(name, value)
        if request.url.path.startswith("/api/"):
            headers.setdefault("Cache-Control", "no-store")
        if self.hsts:
            headers["Strict-Transport-Security"] = HSTS_VALUE
        return response
