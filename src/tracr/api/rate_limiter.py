"""
API Rate Limiting for agents and dashboard users.

Implements:
- Per-IP limiting for unauthenticated endpoints (registration, login)
- Per-key limiting for authenticated callers (device id, user id)
- Graceful 429 responses with Retry-After headers

Rate Limit Strategy (defaults, per minute, see Settings):
- Agent registration: 10 per IP
- Login: 100 per IP
- Agent endpoints: 100 per device
- Dashboard endpoints: 1000 per user

Limits are per process; a multi-process deployment gets N times the
budget.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from fastapi import HTTPException, Request, status

from ..core.config import get_settings

logger = logging.getLogger(__name__)


class RateLimitConfig:
    """Rate limiting configuration."""

    MINUTE_WINDOW = 60

    # Cleanup interval (delete old entries)
    CLEANUP_INTERVAL_SECONDS = 300


class InMemoryRateLimiter:
    """
    In-memory sliding-window rate limiter.

    Tracks request timestamps per IP and per (key, scope).
    """

    def __init__(self):
        self.ip_requests: Dict[Tuple[str, str], List[float]] = defaultdict(list)
        self.key_requests: Dict[Tuple[str, str], List[float]] = defaultdict(list)
        self.last_cleanup = time.time()
        self._lock = threading.Lock()

    def _cleanup_old_entries(self) -> None:
        """Drop buckets with no requests in the last window."""
        now = time.time()
        if now - self.last_cleanup < RateLimitConfig.CLEANUP_INTERVAL_SECONDS:
            return

        cutoff = now - RateLimitConfig.CLEANUP_INTERVAL_SECONDS
        for buckets in (self.ip_requests, self.key_requests):
            for key in list(buckets.keys()):
                buckets[key] = [ts for ts in buckets[key] if ts > cutoff]
                if not buckets[key]:
                    del buckets[key]

        self.last_cleanup = now
        logger.debug("Rate limiter cleanup complete")

    def _check(
        self,
        buckets: Dict[Tuple[str, str], List[float]],
        key: Tuple[str, str],
        limit: int,
        window_seconds: int,
    ) -> Tuple[bool, int, int]:
        with self._lock:
            self._cleanup_old_entries()

            now = time.time()
            cutoff = now - window_seconds

            recent = [ts for ts in buckets[key] if ts > cutoff]
            buckets[key] = recent

            if len(recent) >= limit:
                oldest = min(recent)
                retry_after = int((oldest + window_seconds) - now) + 1
                return False, len(recent), retry_after

            recent.append(now)
            return True, len(recent), 0

    def check_ip_limit(
        self,
        ip: str,
        scope: str,
        limit: int,
        window_seconds: int = RateLimitConfig.MINUTE_WINDOW,
    ) -> Tuple[bool, int, int]:
        """
        Check if IP has exceeded rate limit for a scope.

        Returns:
            Tuple of (allowed: bool, current_count: int, retry_after_seconds: int)
        """
        return self._check(self.ip_requests, (ip, scope), limit, window_seconds)

    def check_key_limit(
        self,
        key: str,
        scope: str,
        limit: int,
        window_seconds: int = RateLimitConfig.MINUTE_WINDOW,
    ) -> Tuple[bool, int, int]:
        """
        Check if an authenticated caller (device or user) exceeded its limit.

        Returns:
            Tuple of (allowed: bool, current_count: int, retry_after_seconds: int)
        """
        return self._check(self.key_requests, (key, scope), limit, window_seconds)

    def reset(self) -> None:
        with self._lock:
            self.ip_requests.clear()
            self.key_requests.clear()


_rate_limiter: Optional[InMemoryRateLimiter] = None


def get_rate_limiter() -> InMemoryRateLimiter:
    """Get or create the rate limiter singleton."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = InMemoryRateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: Optional[InMemoryRateLimiter]):
    """Allow DI for testing."""
    global _rate_limiter
    _rate_limiter = limiter


def get_client_ip(request: Request) -> str:
    """Client IP, honoring proxy headers when present."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip

    return request.client.host if request.client else "unknown"


def _raise_limited(scope: str, retry_after: int) -> None:
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=f"Rate limit exceeded for {scope}, retry after {retry_after}s",
        headers={"Retry-After": str(retry_after)},
    )


def enforce_ip_limit(request: Request, scope: str, limit: int) -> None:
    if not get_settings().rate_limit_enabled:
        return
    ip = get_client_ip(request)
    allowed, count, retry_after = get_rate_limiter().check_ip_limit(ip, scope, limit)
    if not allowed:
        logger.warning("Rate limit exceeded: ip=%s scope=%s count=%d", ip, scope, count)
        _raise_limited(scope, retry_after)


def enforce_key_limit(key: str, scope: str, limit: int) -> None:
    if not get_settings().rate_limit_enabled:
        return
    allowed, count, retry_after = get_rate_limiter().check_key_limit(key, scope, limit)
    if not allowed:
        logger.warning("Rate limit exceeded: key=%s scope=%s count=%d", key, scope, count)
        _raise_limited(scope, retry_after)


async def rate_limit_register(request: Request) -> None:
    """FastAPI dependency: per-IP limit on agent registration."""
    enforce_ip_limit(request, "register", get_settings().register_rate_limit)


async def rate_limit_login(request: Request) -> None:
    """FastAPI dependency: per-IP limit on dashboard login."""
    enforce_ip_limit(request, "login", get_settings().login_rate_limit)
