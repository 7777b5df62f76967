"""
InfraScope Cache Module
=======================

Short-TTL query cache: Redis when reachable, bounded in-memory LRU otherwise.

Usage:
    from src.cache import RedisCache

    cache = RedisCache(ttl_seconds=60, max_entries=500)
    cache.set("key", {"data": "value"})
    result = cache.get("key")
"""

from .redis_cache import RedisCache, CacheEntry

__all__ = ["RedisCache", "CacheEntry"]
