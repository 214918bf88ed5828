"""Key/value cache with TTL.

Engines receive a ``Cache`` instance instead of keeping module-level maps.
``RedisCache`` is used in production; ``MemoryCache`` backs tests and local
runs, and is the fallback when Redis cannot be reached.
"""
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis

from .logging import get_logger
from .time import Clock

logger = get_logger(__name__)


class Cache(ABC):
    """Async key/value cache storing JSON-serialisable values."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the value or None when missing/expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value, optionally expiring after ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def incr(self, key: str, amount: float = 1, ttl: Optional[int] = None) -> float:
        """Increment a numeric counter and return the new value."""

    @abstractmethod
    async def clear_prefix(self, prefix: str) -> int:
        """Evict every key starting with ``prefix``; returns evicted count."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class MemoryCache(Cache):
    """In-process cache with explicit eviction driven by an injectable clock."""

    def __init__(self, clock: Optional[Clock] = None, max_entries: int = 10000):
        self.clock = clock or Clock()
        self.max_entries = max_entries
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self.clock.monotonic() >= expires_at

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self.clock.monotonic() + ttl if ttl else None

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        # Round-trip through JSON so callers never share mutable state
        return json.loads(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if len(self._data) >= self.max_entries and key not in self._data:
            self.evict_expired()
            if len(self._data) >= self.max_entries:
                oldest = next(iter(self._data))
                del self._data[oldest]
        self._data[key] = (json.dumps(value, default=str), self._expiry(ttl))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def incr(self, key: str, amount: float = 1, ttl: Optional[int] = None) -> float:
        current = await self.get(key) or 0
        new_value = current + amount
        entry = self._data.get(key)
        expires_at = entry[1] if entry and entry[1] is not None else self._expiry(ttl)
        self._data[key] = (json.dumps(new_value), expires_at)
        return new_value

    async def clear_prefix(self, prefix: str) -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for k in keys:
            del self._data[k]
        return len(keys)

    def evict_expired(self) -> int:
        """Drop every expired entry now."""
        expired = [k for k, (_, exp) in self._data.items() if self._expired(exp)]
        for k in expired:
            del self._data[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class RedisCache(Cache):
    """Redis-backed cache storing JSON strings."""

    def __init__(self, client: "aioredis.Redis"):
        self.redis = client

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable cache entry {key}")
            await self.redis.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl:
            await self.redis.set(key, payload, ex=int(ttl))
        else:
            await self.redis.set(key, payload)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)

    async def incr(self, key: str, amount: float = 1, ttl: Optional[int] = None) -> float:
        value = await self.redis.incrbyfloat(key, amount)
        if ttl and await self.redis.ttl(key) < 0:
            await self.redis.expire(key, int(ttl))
        return float(value)

    async def clear_prefix(self, prefix: str) -> int:
        count = 0
        async for key in self.redis.scan_iter(match=f"{prefix}*", count=500):
            await self.redis.delete(key)
            count += 1
        return count

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis.aclose()


async def create_cache(redis_url: Optional[str] = None, clock: Optional[Clock] = None) -> Cache:
    """Connect to Redis, falling back to an in-memory cache when unavailable."""
    if redis_url:
        try:
            client = aioredis.from_url(redis_url, decode_responses=True)
            await client.ping()
            logger.info("Connected to Redis cache")
            return RedisCache(client)
        except Exception as e:
            logger.warning(f"Redis not available, using in-memory cache: {e}")
    return MemoryCache(clock=clock)
