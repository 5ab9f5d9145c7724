"""Per-client token-bucket rate limiting, held in process memory.

Every request draws from the client's global bucket. Requests to the
sensitive paths (run start, token submission, reminders) also draw from a
smaller bucket, which slows down approval-token guessing.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

SENSITIVE_PATHS = frozenset({
    "/api/v1/reviews",
    "/api/v1/approvals/submit",
    "/api/v1/approvals/remind",
    "/api/v1/edd/submit",
})

UNLIMITED_PATHS = frozenset({"/", "/health", "/docs", "/redoc", "/openapi.json"})

RETRY_AFTER_SECONDS = 60


class TokenBucket:
    """`capacity` tokens, refilled continuously at `rate` tokens per second."""

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity)
        self._clock = clock
        self._stamp = clock()

    def consume(self) -> bool:
        now = self._clock()
        refill = (now - self._stamp) * self.rate
        self._stamp = now
        self.tokens = min(float(self.capacity), self.tokens + refill)
        if self.tokens < 1.0:
            return False
        self.tokens -= 1.0
        return True


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, global_rpm: int = 120, sensitive_rpm: int = 20) -> None:
        super().__init__(app)
        self._limits = {"global": global_rpm, "sensitive": sensitive_rpm}
        self._buckets: dict[tuple[str, str], TokenBucket] = {}

    def _allow(self, scope: str, client: str) -> bool:
        bucket = self._buckets.get((scope, client))
        if bucket is None:
            rpm = self._limits[scope]
            bucket = self._buckets[(scope, client)] = TokenBucket(rate=rpm / 60.0, capacity=rpm)
        return bucket.consume()

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in UNLIMITED_PATHS:
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        scopes = ["global", "sensitive"] if path in SENSITIVE_PATHS else ["global"]
        for scope in scopes:
            if not self._allow(scope, client):
                logger.warning("Rate limit (%s) hit by %s on %s", scope, client, path)
                return JSONResponse(
                    status_code=429,
                    content={"detail": f"Too many requests ({scope} limit). Retry later."},
                    headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
                )
        return await call_next(request)
