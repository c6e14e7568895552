"""Rate limiting middleware using Redis.

Protects the onboarding endpoints from abuse with per-IP limits, tighter on
the session-creating routes.  Uses a sliding window over a Redis sorted set.
"""

import logging
import time
from typing import Callable, Optional

from fastapi import Request, Response, status
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware

from onboarding.middleware.exceptions import create_error_response
from onboarding.utils.redis import get_redis

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Originating client address, honouring the load balancer headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
        if ip:
            return ip
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware with Redis backend.

    Features:
    - Per-IP rate limits
    - Sliding window algorithm
    - Configurable limits per endpoint pattern (method-aware)
    - Fails open when Redis is unreachable
    """

    def __init__(
        self,
        app,
        default_limit: int = 100,  # requests
        default_window: int = 60,  # seconds
        exempt_paths: Optional[list[str]] = None,
        enabled: bool = True,
    ):
        super().__init__(app)
        self.default_limit = default_limit
        self.default_window = default_window
        self.exempt_paths = exempt_paths or ["/health", "/docs", "/openapi.json"]
        self.enabled = enabled

        # Custom limits for specific (method, path) patterns
        self.custom_limits = {
            ("POST", "/api/onboarding/start"): (10, 300),  # 10 per 5 minutes
            ("POST", "/api/onboarding/session"): (10, 300),
            ("POST", "/api/onboarding/recovery"): (30, 60),
            ("POST", "/api/onboarding/cleanup"): (5, 60),
        }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Check rate limit before processing request."""
        if not self.enabled:
            return await call_next(request)

        # Skip exempt paths
        if any(request.url.path.startswith(path) for path in self.exempt_paths):
            return await call_next(request)

        limit, window, scope = self._get_limit_for(request.method, request.url.path)
        key = f"{scope}:ip:{client_ip(request)}"

        allowed, remaining, reset_time = await self._check_rate_limit(
            key, limit, window
        )

        if not allowed:
            retry_after = max(int(reset_time - time.time()), 1)
            # Middleware sits outside the exception handlers; build the envelope here
            response = create_error_response(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                message=f"Rate limit exceeded. Try again in {retry_after} seconds.",
                error_code="RATE_LIMITED",
            )
            response.headers["X-RateLimit-Limit"] = str(limit)
            response.headers["X-RateLimit-Remaining"] = "0"
            response.headers["X-RateLimit-Reset"] = str(int(reset_time))
            response.headers["Retry-After"] = str(retry_after)
            return response

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(reset_time))

        return response

    def _get_limit_for(self, method: str, path: str) -> tuple[int, int, str]:
        """Get rate limit, window and key scope for a request."""
        for (pattern_method, pattern), (limit, window) in self.custom_limits.items():
            if method == pattern_method and path.rstrip("/") == pattern:
                return limit, window, f"{method}:{pattern}"
        return self.default_limit, self.default_window, "default"

    async def _check_rate_limit(
        self, key: str, limit: int, window: int
    ) -> tuple[bool, int, float]:
        """Check rate limit using sliding window algorithm.

        Returns:
            (allowed, remaining, reset_time)
        """
        current_time = time.time()
        window_start = current_time - window

        redis_key = f"ratelimit:{key}"

        try:
            redis_client = await get_redis()

            # Remove old entries outside the window
            await redis_client.zremrangebyscore(redis_key, 0, window_start)

            count = await redis_client.zcard(redis_key)

            if count >= limit:
                oldest = await redis_client.zrange(redis_key, 0, 0, withscores=True)
                if oldest:
                    reset_time = oldest[0][1] + window
                else:
                    reset_time = current_time + window
                return False, 0, reset_time

            await redis_client.zadd(redis_key, {str(current_time): current_time})
            await redis_client.expire(redis_key, window)

            remaining = limit - count - 1
            reset_time = current_time + window

            return True, remaining, reset_time

        except (RedisError, OSError) as e:
            # If Redis fails, allow request (fail open)
            logger.error("Rate limit check failed: %s", e)
            return True, limit, current_time + window
