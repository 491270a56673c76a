import asyncio
import logging
import time
import traceback
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from portivo.config import settings
from portivo.database import engine
from portivo.errors import ErrorKind, PortalError
from portivo.middleware.logging_config import configure_logging

configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger("portivo")

from portivo.api.activity import router as activity_router  # noqa: E402
from portivo.api.approvals import router as approvals_router  # noqa: E402
from portivo.api.auth import router as auth_router, user_router  # noqa: E402
from portivo.api.clients import router as clients_router  # noqa: E402
from portivo.api.dashboard import router as dashboard_router  # noqa: E402
from portivo.api.files import router as files_router  # noqa: E402
from portivo.api.invoices import router as invoices_router  # noqa: E402
from portivo.api.messages import router as messages_router  # noqa: E402
from portivo.api.portal import router as portal_router  # noqa: E402
from portivo.api.projects import router as projects_router  # noqa: E402
from portivo.api.reports import router as reports_router  # noqa: E402
from portivo.api.search import router as search_router  # noqa: E402
from portivo.api.team import router as team_router  # noqa: E402
from portivo.api.workspaces import router as workspaces_router  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await engine.dispose()


app = FastAPI(
    title="Portivo",
    description="Multi-tenant client portal for agencies",
    version="0.1.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────────────
origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

# ── Security headers middleware ──────────────────────────────────────────────
from portivo.middleware.security_headers import SecurityHeadersMiddleware  # noqa: E402

app.add_middleware(SecurityHeadersMiddleware)

# ── Rate limiting middleware ─────────────────────────────────────────────────
from portivo.middleware.rate_limit import RateLimitMiddleware  # noqa: E402

app.add_middleware(RateLimitMiddleware)

# ── Request context middleware (request ID + timing) ─────────────────────────
from portivo.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
from portivo.middleware.metrics import PrometheusMiddleware  # noqa: E402

app.add_middleware(PrometheusMiddleware)


# ── Error envelope ───────────────────────────────────────────────────────────

@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    if exc.kind == ErrorKind.INTERNAL:
        logger.error("Internal error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Re-render pydantic failures as ``validation_failed`` with a field -> message map."""
    errors: dict[str, str] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "form")]
        errors.setdefault(".".join(loc) or "body", err.get("msg", "Invalid value"))
    return JSONResponse(
        status_code=422,
        content={"kind": ErrorKind.VALIDATION_FAILED.value, "message": "Invalid data", "errors": errors},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a short traceback in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logger.error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    content = {"kind": ErrorKind.INTERNAL.value, "message": "Internal Server Error"}
    if settings.environment == "development":
        content["message"] = f"{type(exc).__name__}: {exc}"
        content["traceback"] = tb.splitlines()[-5:]
    return JSONResponse(status_code=500, content=content)


# Register API routers
app.include_router(auth_router)
app.include_router(user_router)
app.include_router(workspaces_router)
app.include_router(team_router)
app.include_router(clients_router)
app.include_router(projects_router)
app.include_router(messages_router)
app.include_router(files_router)
app.include_router(approvals_router)
app.include_router(invoices_router)
app.include_router(activity_router)
app.include_router(search_router)
app.include_router(portal_router)
app.include_router(dashboard_router)
app.include_router(reports_router)


@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ── Health check ─────────────────────────────────────────────────────────────

HEALTH_CACHE_TTL = 10.0  # seconds
CHECK_TIMEOUT = 2.0  # seconds per component

_last_health: tuple[float, int, dict] | None = None


async def _check_database() -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def _check_redis() -> None:
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    finally:
        await client.aclose()


async def _run_check(name: str, check) -> dict:
    try:
        await asyncio.wait_for(check(), timeout=CHECK_TIMEOUT)
    except Exception as exc:
        logger.warning("Health check %s failed: %s", name, exc)
        status = {"status": "down"}
        if settings.environment == "development":
            status["error"] = f"{type(exc).__name__}: {exc}"
        return status
    return {"status": "up"}


@app.get("/api/health")
async def health_check():
    """
    Database down is ``unhealthy`` (503): nothing can be served. Redis down is
    ``degraded``: reads work but sign-in links and e-mail are unavailable.
    """
    global _last_health

    now = time.monotonic()
    if _last_health and now - _last_health[0] < HEALTH_CACHE_TTL:
        return JSONResponse(status_code=_last_health[1], content=_last_health[2])

    database, queue = await asyncio.gather(
        _run_check("database", _check_database),
        _run_check("redis", _check_redis),
    )
    if database["status"] != "up":
        overall, status_code = "unhealthy", 503
    elif queue["status"] != "up":
        overall, status_code = "degraded", 200
    else:
        overall, status_code = "healthy", 200

    body = {
        "status": overall,
        "environment": settings.environment,
        "components": {"database": database, "redis": queue},
    }
    _last_health = (now, status_code, body)
    return JSONResponse(status_code=status_code, content=body)
