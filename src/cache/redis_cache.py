"""
Query Cache for InfraScope
==========================

Short-TTL memoization of full query results.

Features:
- Redis backend when REDIS_URL is reachable
- Bounded in-memory LRU otherwise (lazy expiry, no background sweep)
- JSON serialization
- Namespace prefixing for key isolation

Usage:
    cache = RedisCache(redis_url=None, ttl_seconds=60, max_entries=500)
    cache.set(signature.cache_key(), response.to_dict())
    result = cache.get(signature.cache_key())
"""

import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable

import redis

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached value with its absolute expiry (monotonic seconds)."""
    key: str
    value: Any
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class RedisCache:
    """
    Redis-based cache with a bounded in-memory LRU fallback.

    Falls back to memory when no Redis URL is configured or Redis is
    unreachable at connect time or on a failed operation.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: str = "infrascope",
        ttl_seconds: int = 60,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            redis_url: Redis URL. None means memory only.
            prefix: Key prefix for namespace isolation.
            ttl_seconds: Default time to live.
            max_entries: LRU bound for the memory store.
            clock: Monotonic clock, injectable for tests.
        """
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._redis: Optional[redis.Redis] = None
        self._memory_cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._use_memory = True
        self._hits = 0
        self._misses = 0

        if redis_url:
            self._connect(redis_url)

    @classmethod
    def from_settings(cls, settings) -> "RedisCache":
        cfg = settings.cache
        return cls(
            redis_url=cfg.redis_url,
            prefix=cfg.prefix,
            ttl_seconds=cfg.ttl_seconds,
            max_entries=cfg.max_entries,
        )

    def _connect(self, redis_url: str) -> None:
        """Establish Redis connection."""
        try:
            self._redis = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
            )
            # Test connection
            self._redis.ping()
            self._use_memory = False
            logger.info(f"Redis cache connected: {redis_url.split('@')[-1]}")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}. Using in-memory cache.")
            self._redis = None
            self._use_memory = True

    def _make_key(self, key: str) -> str:
        """Create prefixed key."""
        return f"{self.prefix}:{key}"

    @property
    def backend(self) -> str:
        return "memory" if self._use_memory else "redis"

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value or None if not found/expired
        """
        full_key = self._make_key(key)

        if self._use_memory:
            value = self._memory_get(full_key)
        else:
            try:
                raw = self._redis.get(full_key)
                value = json.loads(raw) if raw is not None else None
            except redis.RedisError as e:
                logger.warning(f"Redis get failed: {e}")
                value = self._memory_get(full_key)

        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl_seconds: Time to live, defaults to the cache TTL

        Returns:
            True if successful
        """
        full_key = self._make_key(key)
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds

        if self._use_memory:
            return self._memory_set(full_key, value, ttl)

        try:
            serialized = json.dumps(value)
            if ttl:
                self._redis.setex(full_key, ttl, serialized)
            else:
                self._redis.set(full_key, serialized)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis set failed: {e}")
            return self._memory_set(full_key, value, ttl)

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        full_key = self._make_key(key)

        if self._use_memory:
            return self._memory_cache.pop(full_key, None) is not None

        try:
            return self._redis.delete(full_key) > 0
        except redis.RedisError as e:
            logger.warning(f"Redis delete failed: {e}")
            return self._memory_cache.pop(full_key, None) is not None

    def clear_prefix(self, prefix: str = "") -> int:
        """
        Clear all keys with given prefix.

        Returns:
            Number of keys deleted
        """
        full_prefix = self._make_key(prefix)

        if self._use_memory:
            keys_to_delete = [k for k in self._memory_cache if k.startswith(full_prefix)]
            for k in keys_to_delete:
                del self._memory_cache[k]
            return len(keys_to_delete)

        try:
            keys = list(self._redis.scan_iter(match=f"{full_prefix}*"))
            if keys:
                return self._redis.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning(f"Redis clear_prefix failed: {e}")
            return 0

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats = {
            "backend": self.backend,
            "connected": not self._use_memory,
            "hits": self._hits,
            "misses": self._misses,
            "ttl_seconds": self.ttl_seconds,
        }

        if self._use_memory:
            stats["memory_keys"] = len(self._memory_cache)
            stats["max_entries"] = self.max_entries
        else:
            try:
                stats["redis_keys"] = self._redis.dbsize()
            except redis.RedisError as e:
                logger.warning(f"Redis stats failed: {e}")

        return stats

    # =========================================================================
    # MEMORY LRU
    # =========================================================================

    def _memory_get(self, key: str) -> Optional[Any]:
        """Get from in-memory cache, expiring lazily."""
        entry = self._memory_cache.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del self._memory_cache[key]
            return None

        self._memory_cache.move_to_end(key)
        return entry.value

    def _memory_set(self, key: str, value: Any, ttl_seconds: Optional[int]) -> bool:
        """Set in in-memory cache, evicting least recently used entries."""
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None

        self._memory_cache[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        self._memory_cache.move_to_end(key)

        while len(self._memory_cache) > self.max_entries:
            evicted, _ = self._memory_cache.popitem(last=False)
            logger.debug(f"Evicted cache entry {evicted}")
        return True

    # =========================================================================
    # UTILITIES
    # =========================================================================

    def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            self._redis.close()
            self._redis = None
        self._use_memory = True
