"""
Redis sliding-window rate limiter.

Requests are counted per client IP in named buckets: the magic-link endpoint
has its own small bucket (every hit sends an e-mail), everything else shares
the general one. When Redis is unreachable requests pass through.
"""

import logging
import time
from dataclasses import dataclass

import redis.asyncio as aioredis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from portivo.config import settings

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/api/health", "/metrics"})
AUTH_PATHS = frozenset({"/api/auth/magic-link"})
WINDOW_SECONDS = 60


@dataclass(frozen=True)
class Bucket:
    name: str
    limit: int


def bucket_for(path: str) -> Bucket | None:
    if path in EXEMPT_PATHS:
        return None
    if path in AUTH_PATHS:
        return Bucket("auth", settings.rate_limit_auth_per_minute)
    return Bucket("api", settings.rate_limit_per_minute)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app):
        super().__init__(app)
        self._redis: aioredis.Redis | None = None

    async def _client(self) -> aioredis.Redis | None:
        if self._redis is None:
            try:
                client = aioredis.from_url(settings.redis_url, decode_responses=True)
                await client.ping()
            except Exception as exc:
                logger.warning("Rate limiter disabled for this request, Redis unavailable: %s", exc)
                return None
            self._redis = client
        return self._redis

    async def _hit(self, client: aioredis.Redis, key: str) -> int:
        """Record one request at ``now`` and return the count inside the window."""
        now = time.time()
        pipe = client.pipeline()
        pipe.zremrangebyscore(key, 0, now - WINDOW_SECONDS)
        pipe.zadd(key, {f"{now:.6f}": now})
        pipe.zcard(key)
        pipe.expire(key, WINDOW_SECONDS)
        results = await pipe.execute()
        return results[2]

    async def dispatch(self, request: Request, call_next):
        bucket = bucket_for(request.url.path) if settings.rate_limit_enabled else None
        if bucket is None:
            return await call_next(request)

        client = await self._client()
        if client is None:
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        try:
            count = await self._hit(client, f"portivo:ratelimit:{bucket.name}:{ip}")
        except Exception as exc:
            logger.warning("Rate limiter Redis error: %s", exc)
            return await call_next(request)

        if count > bucket.limit:
            logger.info("Rate limited %s on %s (%d/%d)", ip, bucket.name, count, bucket.limit)
            return JSONResponse(
                status_code=429,
                content={"kind": "rate_limited", "message": "Too many requests. Please try again later."},
                headers={"Retry-After": str(WINDOW_SECONDS)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(bucket.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, bucket.limit - count))
        return response
