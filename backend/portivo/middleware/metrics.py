"""
Prometheus metrics middleware.

Collects HTTP request metrics (counter + histogram) and exposes the
application-level counters for side effects that must never fail a request
(activity log writes, notification delivery) and for workflow transitions.
"""

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Activity log ─────────────────────────────────────────────────────────────

activity_log_failures_total = Counter(
    "activity_log_failures_total",
    "Activity log entries that could not be written",
    ["action"],
)

# ── Search ───────────────────────────────────────────────────────────────────

search_failures_total = Counter(
    "search_failures_total",
    "Search queries where one result type failed and was returned empty",
    ["type"],
)

# ── Notifications ────────────────────────────────────────────────────────────

notifications_enqueued_total = Counter(
    "notifications_enqueued_total",
    "Notifications pushed onto the delivery queue",
    ["kind"],
)

notification_failures_total = Counter(
    "notification_failures_total",
    "Notifications that failed at enqueue or delivery",
    ["kind", "stage"],
)

notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notifications delivered by the worker",
    ["kind"],
)

# ── Workflow ─────────────────────────────────────────────────────────────────

state_transitions_total = Counter(
    "state_transitions_total",
    "Status transitions applied by the workflow state machines",
    ["machine", "from_status", "to_status"],
)

_ID_SEGMENT = re.compile(r"^[0-9a-f]{32}$|^\d+$|^INV-")


def _normalize_path(path: str) -> str:
    """Collapse path parameters to reduce cardinality.

    e.g. /api/invoices/3f2a...c9 → /api/invoices/{id}
    """
    parts = path.strip("/").split("/")
    normalized = []
    for i, part in enumerate(parts):
        if i > 1 and _ID_SEGMENT.match(part):
            normalized.append("{id}")
        elif i == 2 and parts[1] == "portal":
            normalized.append("{slug}")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        http_requests_total.labels(
            method=method,
            path=path,
            status_code=response.status_code,
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            path=path,
        ).observe(duration)

        return response
