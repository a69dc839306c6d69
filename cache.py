"""
Caching layer for the transaction explorer
Typed composite cache keys over in-memory and Redis tiers
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple, Union

import redis

from config import config

logger = logging.getLogger(__name__)


class CacheKind(Enum):
    """What a cached value is, with its default TTL in seconds"""

    TOKEN = ("token", config.CACHE_TTL_LONG)
    BLOCK_TIMESTAMP = ("block_ts", config.CACHE_TTL_LONG)
    ADDRESS_TYPE = ("address_type", config.CACHE_TTL_LONG)
    TX_RECEIPT = ("receipt", config.CACHE_TTL_LONG)
    BLOCK_RANGE = ("block_range", config.CACHE_TTL_MEDIUM)
    EXPLORER = ("explorer", config.CACHE_TTL_SHORT)

    def __init__(self, label: str, ttl: int):
        self.label = label
        self.default_ttl = ttl


@dataclass(frozen=True)
class CacheKey:
    """
    Composite cache key: (kind, chain, address, block range, extra parts)

    Rendering is owned by the cache; callers never concatenate key strings.
    """

    kind: CacheKind
    chain: str
    address: Optional[str] = None
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    extra: Tuple[str, ...] = ()

    @property
    def ttl(self) -> int:
        return self.kind.default_ttl

    def render(self) -> str:
        parts = [self.kind.label, self.chain.lower()]
        parts.append((self.address or "").lower())
        if self.from_block is not None or self.to_block is not None:
            parts.append(f"{self.from_block}-{self.to_block}")
        parts.extend(str(p).lower() for p in self.extra)
        return "|".join(parts)


KeyLike = Union[CacheKey, str]


def _render(key: KeyLike) -> str:
    return key.render() if isinstance(key, CacheKey) else key


def _ttl(key: KeyLike, ttl: Optional[int]) -> int:
    if ttl is not None:
        return ttl
    return key.ttl if isinstance(key, CacheKey) else config.CACHE_TTL_MEDIUM


@dataclass
class CacheEntry:
    """Cache entry with metadata"""

    key: str
    value: Any
    timestamp: float
    ttl: int
    hit_count: int = 0


class MemoryCache:
    """In-memory LRU cache"""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self.cache: dict[str, CacheEntry] = {}
        self.access_order: list[str] = []

    def get(self, key: KeyLike) -> Optional[Any]:
        """Get value from cache"""
        key = _render(key)
        entry = self.cache.get(key)
        if entry is None:
            return None

        if time.time() - entry.timestamp > entry.ttl:
            self.delete(key)
            return None

        if key in self.access_order:
            self.access_order.remove(key)
        self.access_order.append(key)
        entry.hit_count += 1
        return entry.value

    def set(self, key: KeyLike, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache"""
        ttl = _ttl(key, ttl)
        key = _render(key)
        if len(self.cache) >= self.max_size and key not in self.cache:
            self._evict_lru()

        self.cache[key] = CacheEntry(key=key, value=value, timestamp=time.time(), ttl=ttl)

        if key in self.access_order:
            self.access_order.remove(key)
        self.access_order.append(key)

    def delete(self, key: KeyLike) -> None:
        """Delete key from cache"""
        key = _render(key)
        self.cache.pop(key, None)
        if key in self.access_order:
            self.access_order.remove(key)

    def _evict_lru(self) -> None:
        """Evict least recently used item"""
        if self.access_order:
            lru_key = self.access_order.pop(0)
            self.cache.pop(lru_key, None)

    def get_stats(self) -> dict:
        """Get cache statistics"""
        return {
            "size": len(self.cache),
            "max_size": self.max_size,
            "total_hits": sum(entry.hit_count for entry in self.cache.values()),
            "keys": list(self.cache.keys()),
        }


class RedisCache:
    """Redis-based cache with automatic fallback to MemoryCache"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        fallback_cache: Optional[MemoryCache] = None,
        key_prefix: str = "explorer:",
    ):
        """
        Initialize Redis cache with optional fallback

        Args:
            redis_url: Redis connection URL (default: config.REDIS_URL or localhost)
            fallback_cache: Cache used while Redis is unavailable
            key_prefix: Prefix for all cache keys to avoid collisions
        """
        self.redis_url = redis_url or config.REDIS_URL or "redis://localhost:6379/0"
        self.key_prefix = key_prefix
        self.enabled = False
        self.client = None
        self.fallback_cache = fallback_cache or MemoryCache(max_size=1000)
        self.fallback_mode = False

        try:
            self.client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
            )
            self.client.ping()
            self.enabled = True
            logger.info(f"Redis cache initialized: {self.redis_url}")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed ({e}), using fallback MemoryCache")
            self.fallback_mode = True
            self.client = None

    def _get_key(self, key: KeyLike) -> str:
        """Add prefix to rendered cache key"""
        return f"{self.key_prefix}{_render(key)}"

    def get(self, key: KeyLike) -> Optional[Any]:
        """Get value from Redis or fallback cache"""
        if self.fallback_mode or self.client is None:
            return self.fallback_cache.get(key)

        try:
            value = self.client.get(self._get_key(key))
            return json.loads(value) if value else None
        except json.JSONDecodeError as e:
            logger.error(f"Redis JSON decode error for key {_render(key)}: {e}")
            self.client.delete(self._get_key(key))
            return None
        except redis.RedisError as e:
            logger.error(f"Redis get error for key {_render(key)}: {e}")
            self.fallback_mode = True
            return self.fallback_cache.get(key)

    def set(self, key: KeyLike, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in Redis or fallback cache"""
        ttl = _ttl(key, ttl)
        if self.fallback_mode or self.client is None:
            self.fallback_cache.set(key, value, ttl)
            return

        try:
            self.client.setex(self._get_key(key), ttl, json.dumps(value))
        except (TypeError, ValueError) as e:
            logger.error(f"Redis serialization error for key {_render(key)}: {e}")
        except redis.RedisError as e:
            logger.error(f"Redis set error for key {_render(key)}: {e}")
            self.fallback_mode = True
            self.fallback_cache.set(key, value, ttl)

    def delete(self, key: KeyLike) -> None:
        """Delete key from Redis or fallback cache"""
        if self.fallback_mode or self.client is None:
            self.fallback_cache.delete(key)
            return

        try:
            self.client.delete(self._get_key(key))
        except redis.RedisError as e:
            logger.error(f"Redis delete error for key {_render(key)}: {e}")
            self.fallback_mode = True
            self.fallback_cache.delete(key)

    def get_stats(self) -> dict:
        """Get cache statistics"""
        if self.fallback_mode or self.client is None:
            stats = self.fallback_cache.get_stats()
            stats["mode"] = "fallback"
            return stats
        return {"enabled": True, "mode": "redis", "url": self.redis_url, "key_prefix": self.key_prefix}

    def close(self) -> None:
        """Close Redis connection"""
        if self.client:
            try:
                self.client.close()
                logger.info("Redis connection closed")
            except redis.RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")


class MultiTierCache:
    """Multi-tier cache with memory and Redis"""

    def __init__(
        self,
        memory_cache: Optional[MemoryCache] = None,
        redis_cache: Optional[RedisCache] = None,
    ):
        self.l1_cache = memory_cache or MemoryCache(max_size=1000)
        self.l2_cache = redis_cache
        self.stats = {"l1_hits": 0, "l2_hits": 0, "misses": 0}

    def get(self, key: KeyLike) -> Optional[Any]:
        """Get value from cache (L1 -> L2)"""
        value = self.l1_cache.get(key)
        if value is not None:
            self.stats["l1_hits"] += 1
            return value

        if self.l2_cache:
            value = self.l2_cache.get(key)
            if value is not None:
                self.stats["l2_hits"] += 1
                # Promote to L1
                self.l1_cache.set(key, value)
                return value

        self.stats["misses"] += 1
        return None

    def set(self, key: KeyLike, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache (both tiers)"""
        self.l1_cache.set(key, value, ttl)
        if self.l2_cache:
            self.l2_cache.set(key, value, ttl)

    def delete(self, key: KeyLike) -> None:
        """Delete key from all tiers"""
        self.l1_cache.delete(key)
        if self.l2_cache:
            self.l2_cache.delete(key)

    def close(self) -> None:
        """Release the Redis tier"""
        if self.l2_cache:
            self.l2_cache.close()

    def get_stats(self) -> dict:
        """Get cache statistics"""
        hits = self.stats["l1_hits"] + self.stats["l2_hits"]
        total = hits + self.stats["misses"]
        return {
            "l1": self.l1_cache.get_stats(),
            "l2": {"enabled": self.l2_cache is not None},
            "hits": {"l1": self.stats["l1_hits"], "l2": self.stats["l2_hits"], "total": hits},
            "misses": self.stats["misses"],
            "hit_rate": (hits / total * 100) if total else 0.0,
        }


def create_cache() -> MultiTierCache:
    """Memory cache, backed by Redis when REDIS_URL is configured"""
    redis_cache = RedisCache(config.REDIS_URL) if config.REDIS_URL else None
    return MultiTierCache(MemoryCache(max_size=5000), redis_cache)
