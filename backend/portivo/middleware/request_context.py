"""
Per-request logging context.

The request id comes from an inbound ``X-Request-ID`` header or is generated,
and is echoed on the response. The id and, once the bearer token has been
decoded, the caller's user id live in ContextVars so any log line written
while handling the request can be correlated.
"""

import logging
import time
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_INBOUND_ID_LENGTH = 128

_request_id: ContextVar[str] = ContextVar("request_id", default="")
_user_id: ContextVar[str | None] = ContextVar("user_id", default=None)


def get_request_id() -> str:
    return _request_id.get()


def get_user_id() -> str | None:
    return _user_id.get()


def bind_user(request: Request, user_id: str) -> None:
    """Attach the authenticated user to the current log context."""
    _user_id.set(user_id)
    request.state.user_id = user_id


def _inbound_request_id(request: Request) -> str:
    value = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if value and len(value) <= MAX_INBOUND_ID_LENGTH and value.isprintable():
        return value
    return uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = _inbound_request_id(request)
        id_token = _request_id.set(request_id)
        user_token = _user_id.set(None)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.info(
                "%s %s %s %.0fms",
                request.method,
                request.url.path,
                response.status_code,
                elapsed_ms,
                extra={
                    "duration_ms": elapsed_ms,
                    "status_code": response.status_code,
                    "path": request.url.path,
                    "user_id": getattr(request.state, "user_id", None),
                },
            )
        finally:
            _user_id.reset(user_token)
            _request_id.reset(id_token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
