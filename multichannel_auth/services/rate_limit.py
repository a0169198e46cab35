"""
Fixed-window rate limiting keyed by (client, resource path)
Store-backed, fails open when the store is unreachable
"""
import time
import logging
from dataclasses import dataclass
from typing import Dict

from ..core.store import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Outcome of a single rate limit check"""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds when the current window ends
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        """Standard rate-limit response headers for this result"""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """
    Fixed-window request counter.

    Each request increments ``ratelimit:{client}:{path}``; the window TTL is
    set on the first increment. Requests beyond ``max_requests`` inside the
    window are rejected with the window's remaining TTL as the retry hint.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(self, store: KeyValueStore, max_requests: int = 10, window_seconds: int = 60):
        self._store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def _key(self, client_id: str, path: str) -> str:
        return f"{self.KEY_PREFIX}:{client_id}:{path}"

    async def check(self, client_id: str, path: str) -> RateLimitResult:
        """
        Count a request and decide whether it may proceed.

        Args:
            client_id: Caller identifier (usually the client IP)
            path: Resource path being accessed

        Returns:
            RateLimitResult with the ceiling, remaining allowance and reset time
        """
        key = self._key(client_id, path)
        now = int(time.time())

        try:
            count = await self._store.incr(key, ttl=self.window_seconds)
            ttl = await self._store.ttl(key)
        except Exception as e:
            # Fail open: an unreachable store must not lock out every caller
            logger.warning(f"Rate limit check failed for {path}, allowing request: {e}")
            return RateLimitResult(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests,
                reset_at=now + self.window_seconds,
            )

        if ttl < 0:
            ttl = self.window_seconds

        if count > self.max_requests:
            logger.warning(f"Rate limit exceeded for {path} ({count}/{self.max_requests})")
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=now + ttl,
                retry_after=ttl,
            )

        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=now + ttl,
        )

    async def reset(self, client_id: str, path: str) -> None:
        """Clear the counter for a client and path"""
        try:
            await self._store.delete(self._key(client_id, path))
        except Exception as e:
            logger.warning(f"Failed to reset rate limit for {path}: {e}")
