"""
Risk service caching package.

Provides the cache stores behind the index gateway. Stores keep a fresh
copy bounded by the caller's TTL and a longer-lived stale copy that is only
read while the index is unavailable.
"""

from .cache_store import CacheStore, MemoryCacheStore, RedisCacheStore

__all__ = ["CacheStore", "MemoryCacheStore", "RedisCacheStore"]
