"""
Key-value store with TTLs and atomic counters.

RedisStore is the production backend. InMemoryStore keeps the same semantics
in process memory for local development and tests.
"""
import fnmatch
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# INCR and set the TTL in one step when the key has none (new key, or a
# counter left without expiry by an earlier failure).
_INCR_WITH_TTL = """
local count = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if ttl > 0 and redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], ttl)
end
return count
"""


class KeyValueStore(ABC):
    """
    Async store contract used by the OTP engine, rate limiter, SMS tracking
    and session manager.

    ``ttl`` follows Redis conventions: -2 when the key is missing, -1 when it
    has no expiry.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[int] = None,
        nx: bool = False,
        xx: bool = False,
        keepttl: bool = False,
    ) -> bool:
        """
        Set a value.

        Args:
            key: Store key
            value: String value
            ttl: Expiry in seconds (None keeps no expiry unless keepttl)
            nx: Only set if the key does not exist
            xx: Only set if the key already exists
            keepttl: Retain the existing expiry

        Returns:
            True if the value was written
        """

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int:
        ...

    @abstractmethod
    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        """Atomically increment a counter, applying ``ttl`` if it has no expiry."""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        ...

    @abstractmethod
    def scan_iter(self, pattern: str) -> AsyncIterator[str]:
        ...

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        return await self.set(key, value, ttl=ttl)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisStore(KeyValueStore):
    """Redis-backed store"""

    def __init__(self, client: "redis.Redis"):
        self._redis = client
        self._incr_script = client.register_script(_INCR_WITH_TTL)

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisStore":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=3,
        )
        return cls(client)

    @property
    def client(self) -> "redis.Redis":
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key, value, ttl=None, nx=False, xx=False, keepttl=False) -> bool:
        result = await self._redis.set(key, value, ex=ttl, nx=nx, xx=xx, keepttl=keepttl)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def ttl(self, key: str) -> int:
        return int(await self._redis.ttl(key))

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        if not ttl:
            return int(await self._redis.incr(key))
        return int(await self._incr_script(keys=[key], args=[int(ttl)]))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._redis.expire(key, seconds))

    async def scan_iter(self, pattern: str) -> AsyncIterator[str]:
        async for key in self._redis.scan_iter(match=pattern, count=100):
            yield key

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryStore(KeyValueStore):
    """
    In-process store with the same semantics as RedisStore.

    Expiry is evaluated lazily against ``clock`` (monotonic seconds), which
    tests may replace to move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key, value, ttl=None, nx=False, xx=False, keepttl=False) -> bool:
        with self._lock:
            entry = self._live(key)
            if nx and entry is not None:
                return False
            if xx and entry is None:
                return False
            if ttl is not None:
                expires_at = self._clock() + ttl
            elif keepttl and entry is not None:
                expires_at = entry[1]
            else:
                expires_at = None
            self._data[key] = (str(value), expires_at)
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, int(round(entry[1] - self._clock())))

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                value, expires_at = 0, None
            else:
                try:
                    value = int(entry[0])
                except ValueError:
                    raise ValueError(f"value at {key} is not an integer")
                expires_at = entry[1]
            value += 1
            if ttl and expires_at is None:
                expires_at = self._clock() + ttl
            self._data[key] = (str(value), expires_at)
            return value

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + seconds)
            return True

    async def scan_iter(self, pattern: str) -> AsyncIterator[str]:
        with self._lock:
            keys = [k for k in list(self._data) if self._live(k) is not None]
        for key in keys:
            if fnmatch.fnmatchcase(key, pattern):
                yield key


def create_store(backend: str, redis_url: str) -> KeyValueStore:
    """Build the store for the configured backend."""
    if backend == "memory":
        logger.warning("Using in-memory store; state is not shared between processes")
        return InMemoryStore()
    logger.info("Using Redis store")
    return RedisStore.from_url(redis_url)
