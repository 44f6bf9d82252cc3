"""Rate limiting middleware using Redis.

Fixed one-minute windows per tenant (or per caller without ``X-Tenant-ID``).
Credit-ledger writes get their own, tighter bucket so a burst of paid actions
cannot starve a tenant's ordinary traffic; abuse detection still runs behind
it on the committed transactions.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.settings import get_settings
from src.middleware.auth import PUBLIC_PATHS

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
LEDGER_PREFIXES = ("/api/v1/credits/", "/api/v1/admin/credits/")


def classify_request(method: str, path: str) -> str:
    """Bucket for a request: ``ledger``, ``write`` or ``read``."""
    if method not in WRITE_METHODS:
        return "read"
    if path.startswith(LEDGER_PREFIXES):
        return "ledger"
    return "write"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Redis-backed request limits. When Redis is unreachable requests are
    served unlimited and the failure is logged.
    """

    def __init__(self, app):
        super().__init__(app)
        self.settings = get_settings()
        self.limits = {
            "read": self.settings.rate_limit_read_per_minute,
            "write": self.settings.rate_limit_write_per_minute,
            "ledger": self.settings.rate_limit_ledger_per_minute,
        }
        self.redis_client: Optional[redis.Redis] = None
        if self.settings.rate_limit_enabled:
            self._initialize_redis()

    def _initialize_redis(self):
        try:
            self.redis_client = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                max_connections=self.settings.redis_pool_size,
            )
            logger.info("Redis client initialized for rate limiting")
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Failed to initialize Redis client: {e}")
            self.redis_client = None

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS or not self.redis_client:
            return await call_next(request)

        subject = self._subject(request)
        if not subject:
            return await call_next(request)

        bucket = classify_request(request.method, request.url.path)
        limit = self.limits[bucket]
        window = int(time.time()) // WINDOW_SECONDS
        key = f"rate_limit:{subject}:{bucket}:{window}"

        count = None
        try:
            count = await self._increment(key)
        except redis.RedisError as e:
            logger.error(f"Redis error during rate limiting: {e}")

        if count is not None and count > limit:
            logger.warning(f"Rate limit exceeded for {subject} ({bucket}: {count}/{limit})")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": {
                    "error": "rate_limit_exceeded",
                    "message": f"Rate limit of {limit} {bucket} requests per minute exceeded",
                    "code": "RATE_LIMIT_EXCEEDED",
                    "retry_after": WINDOW_SECONDS,
                }},
                headers={
                    "Retry-After": str(WINDOW_SECONDS),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)

        if count is not None:
            response.headers["X-RateLimit-Limit"] = str(limit)
            response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
            response.headers["X-RateLimit-Reset"] = str((window + 1) * WINDOW_SECONDS)

        return response

    def _subject(self, request: Request) -> Optional[str]:
        tenant_id = getattr(request.state, "requested_tenant_id", None)
        if tenant_id:
            return f"tenant:{tenant_id}"
        user_id = getattr(request.state, "user_id", None)
        if user_id:
            return f"user:{user_id}"
        return None

    async def _increment(self, key: str) -> int:
        async with self.redis_client.pipeline() as pipe:
            pipe.incr(key)
            pipe.expire(key, WINDOW_SECONDS)
            results = await pipe.execute()
        return int(results[0])
