"""
Key-value cache stores used by the index gateway.

The gateway only relies on single-key ``get``/``set``/``get_stale`` plus a
global ``clear``. Every ``set`` writes a fresh copy that expires after the
caller's TTL and a stale copy that outlives it, which is what stale reads
fall back to while the index is unavailable.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from shared.errors import CacheUnavailable
from shared.logging import get_logger


DEFAULT_STALE_TTL = 86400


class CacheStore(ABC):
    """Contract for cache stores consumed by the gateway."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the fresh value for ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    @abstractmethod
    async def get_stale(self, key: str) -> Optional[Any]:
        """Return the last stored value for ``key`` ignoring its TTL."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry owned by this store."""

    async def close(self) -> None:
        """Release connections."""
        return None


class RedisCacheStore(CacheStore):
    """Redis-backed cache store with JSON-serialized values."""

    def __init__(self, redis_url: str, namespace: str = "risk", stale_ttl: int = DEFAULT_STALE_TTL):
        self.redis_url = redis_url
        self.namespace = namespace
        self.stale_ttl = stale_ttl
        self.logger = get_logger("risk.cache.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        return self._redis

    def _fresh_key(self, key: str) -> str:
        return f"{self.namespace}:fresh:{key}"

    def _stale_key(self, key: str) -> str:
        return f"{self.namespace}:stale:{key}"

    async def _read(self, redis_key: str, key: str) -> Optional[Any]:
        try:
            redis_client = await self._get_redis()
            cached = await redis_client.get(redis_key)
        except Exception as e:
            self.logger.error("Cache get error", key=key, error=str(e))
            raise CacheUnavailable("Failed to read cache", details={"key": key, "error": str(e)})

        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (TypeError, json.JSONDecodeError):
            self.logger.warning("Discarding undecodable cache payload", key=key)
            return None

    async def get(self, key: str) -> Optional[Any]:
        return await self._read(self._fresh_key(key), key)

    async def get_stale(self, key: str) -> Optional[Any]:
        return await self._read(self._stale_key(key), key)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheUnavailable("Value is not JSON serializable", details={"key": key, "error": str(e)})

        try:
            redis_client = await self._get_redis()
            async with redis_client.pipeline(transaction=False) as pipeline:
                pipeline.setex(self._fresh_key(key), ttl_seconds, payload)
                pipeline.setex(self._stale_key(key), max(ttl_seconds, self.stale_ttl), payload)
                await pipeline.execute()
            self.logger.debug("Cached value", key=key, ttl=ttl_seconds)
        except Exception as e:
            self.logger.error("Cache set error", key=key, error=str(e))
            raise CacheUnavailable("Failed to write cache", details={"key": key, "error": str(e)})

    async def clear(self) -> None:
        try:
            redis_client = await self._get_redis()
            deleted = 0
            async for redis_key in redis_client.scan_iter(match=f"{self.namespace}:*"):
                deleted += await redis_client.delete(redis_key)
            self.logger.info("Cache cleared", namespace=self.namespace, keys_count=deleted)
        except Exception as e:
            self.logger.error("Cache clear error", error=str(e))
            raise CacheUnavailable("Failed to clear cache", details={"error": str(e)})

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis cache closed")


class MemoryCacheStore(CacheStore):
    """Process-local cache store.

    Values are JSON round-tripped on write so callers observe the same
    shapes they would get back from Redis.
    """

    def __init__(self, stale_ttl: int = DEFAULT_STALE_TTL, clock: Optional[Callable[[], float]] = None):
        self.stale_ttl = stale_ttl
        self._clock = clock or time.monotonic
        # key -> (payload, fresh_until, stale_until)
        self._entries: Dict[str, Tuple[str, float, float]] = {}
        self.logger = get_logger("risk.cache.memory")

    def _lookup(self, key: str, stale: bool) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        payload, fresh_until, stale_until = entry
        now = self._clock()
        if now >= stale_until:
            del self._entries[key]
            return None
        if not stale and now >= fresh_until:
            return None
        return json.loads(payload)

    async def get(self, key: str) -> Optional[Any]:
        return self._lookup(key, stale=False)

    async def get_stale(self, key: str) -> Optional[Any]:
        return self._lookup(key, stale=True)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheUnavailable("Value is not JSON serializable", details={"key": key, "error": str(e)})

        now = self._clock()
        self._entries[key] = (payload, now + ttl_seconds, now + max(ttl_seconds, self.stale_ttl))

    async def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        self.logger.info("Cache cleared", keys_count=count)

    def __len__(self) -> int:
        return len(self._entries)
