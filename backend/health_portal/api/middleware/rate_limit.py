"""
Sliding-window rate limiting, backed by Redis when ``REDIS_URL`` is set.

Usage:
    from health_portal.api.middleware.rate_limit import rate_limit

    @router.post("/providers/link", dependencies=[rate_limit(max_requests=10, window_seconds=60)])
    async def link(...):
        ...

The global limit is attached in main.py via ``RateLimitMiddleware``.
"""

import logging
import time

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from health_portal.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Used when Redis is not configured or not reachable (single process only)
_memory_store: dict[str, list[float]] = {}


async def _check_rate_limit_redis(key: str, max_requests: int, window: int) -> bool:
    now = time.time()
    client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        pipeline = client.pipeline()
        pipeline.zremrangebyscore(key, 0, now - window)
        pipeline.zadd(key, {str(now): now})
        pipeline.zcard(key)
        pipeline.expire(key, window)
        results = await pipeline.execute()
    finally:
        await client.aclose()
    return results[2] > max_requests


def _check_rate_limit_memory(key: str, max_requests: int, window: int) -> bool:
    now = time.time()
    hits = [t for t in _memory_store.get(key, []) if t > now - window]
    hits.append(now)
    _memory_store[key] = hits
    return len(hits) > max_requests


async def is_rate_limited(key: str, max_requests: int, window: int) -> bool:
    if settings.REDIS_URL:
        try:
            return await _check_rate_limit_redis(key, max_requests, window)
        except (RedisError, OSError) as exc:
            logger.debug("Redis rate limiter unavailable, using memory: %s", exc)
    return _check_rate_limit_memory(key, max_requests, window)


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit(max_requests: int = 60, window_seconds: int = 60, key_prefix: str = "rl"):
    """Per-route limit, keyed by path and client IP."""

    async def _dependency(request: Request):
        key = f"{key_prefix}:{request.url.path}:{_get_client_ip(request)}"
        if await is_rate_limited(key, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Max {max_requests} requests per {window_seconds}s.",
                headers={"Retry-After": str(window_seconds)},
            )

    return Depends(_dependency)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Generous global limit per client IP."""

    def __init__(self, app, max_requests: int = 200, window_seconds: int = 60):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    async def dispatch(self, request: Request, call_next):
        key = f"global_rl:{_get_client_ip(request)}"
        if await is_rate_limited(key, self.max_requests, self.window_seconds):
            return JSONResponse(
                status_code=429,
                content={
                    "detail": f"Rate limit exceeded. Max {self.max_requests} requests per {self.window_seconds}s."
                },
                headers={"Retry-After": str(self.window_seconds)},
            )
        return await call_next(request)
