"""Rate limiting middleware: per-identity throttling of paid work and the portal.

Uses in-memory counters (per worker). The cost breaker, not this, is the
shared spend guard.
"""

import os
import time
import logging
from collections import deque
from dataclasses import dataclass, field

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from billing_core.config import settings

logger = logging.getLogger(__name__)

# Disable rate limiting in test mode (env var set by conftest.py)
_TESTING = os.environ.get("BILLING_CORE_TESTING") == "1"


@dataclass(frozen=True)
class PathLimit:
    """A per-identity limit on every path under prefix."""

    prefix: str
    setting_name: str
    window_seconds: float

    @property
    def limit(self) -> int:
        return getattr(settings, self.setting_name)


_PATH_LIMITS = (
    PathLimit("/api/v1/work", "work_requests_per_hour", 3600.0),
    PathLimit("/api/v1/billing/portal", "portal_requests_per_minute", 60.0),
)


def _limit_for(path: str) -> PathLimit | None:
    return next((rule for rule in _PATH_LIMITS if path.startswith(rule.prefix)), None)


@dataclass
class RateBucket:
    """Request times for one (rule, identity) pair inside the rule's window."""

    window_seconds: float = 60.0
    hits: deque[float] = field(default_factory=deque)

    def allow(self, limit: int) -> bool:
        now = time.monotonic()
        while self.hits and self.hits[0] <= now - self.window_seconds:
            self.hits.popleft()
        if len(self.hits) >= limit:
            return False
        self.hits.append(now)
        return True

    def is_stale(self) -> bool:
        """True once the newest hit has aged out of the window."""
        return not self.hits or time.monotonic() - self.hits[-1] > self.window_seconds


class BucketRegistry:
    """In-memory buckets keyed by rule prefix and caller identity."""

    def __init__(self, sweep_interval: float = 300.0):
        self._buckets: dict[tuple[str, str], RateBucket] = {}
        self._sweep_interval = sweep_interval
        self._last_sweep = 0.0

    def bucket(self, rule: PathLimit, identity: str) -> RateBucket:
        self._sweep()
        key = (rule.prefix, identity)
        if key not in self._buckets:
            self._buckets[key] = RateBucket(rule.window_seconds)
        return self._buckets[key]

    def _sweep(self) -> None:
        now = time.monotonic()
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        stale = [key for key, bucket in self._buckets.items() if bucket.is_stale()]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Dropped %d idle rate limit buckets", len(stale))

    def clear(self) -> None:
        self._buckets.clear()
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._buckets)


_buckets = BucketRegistry()


def _extract_identity(request: Request) -> str:
    """Caller id from a valid JWT, falling back to client IP.

    NEVER trust client-supplied identity headers for rate limiting.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        from billing_core.api.auth import decode_caller_token

        claims = decode_caller_token(auth_header[7:])
        if claims is not None:
            return f"user:{claims['sub']}"

    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Enforces per-identity limits on the expensive endpoints."""

    async def dispatch(self, request: Request, call_next):
        if _TESTING:
            return await call_next(request)

        path = request.url.path
        rule = _limit_for(path)
        if rule is None:
            return await call_next(request)

        identity = _extract_identity(request)
        if not _buckets.bucket(rule, identity).allow(rule.limit):
            logger.warning("Rate limited: identity=%s path=%s", identity, path)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please slow down and try again later."},
            )

        return await call_next(request)
