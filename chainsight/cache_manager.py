"""
TTL cache layer for provider responses.

This module handles:
- A swappable cache backend interface
- In-memory caching with LRU eviction
- Disk-based persistent caching
- Single-flight fetches per cache key
- Cache invalidation and cleanup
"""

import os
import json
import time
import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiofiles

from .config import Config
from .monitoring.metrics import MetricsCollector
from .utils import ensure_directory

logger = logging.getLogger(__name__)


def make_cache_key(provider: str, metric: str, asset: str, window: Any = "") -> str:
    """Build the cache key for a (provider, metric, asset, window) request."""
    return f"{provider}:{metric}:{asset}:{window}"


@dataclass(frozen=True)
class CacheEntry:
    """A cached value. Refreshes replace the whole entry."""
    data: Any
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


class CacheBackend(ABC):
    """Storage behind the cache manager."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    async def set(self, key: str, entry: CacheEntry):
        ...

    @abstractmethod
    async def delete(self, key: str):
        ...

    @abstractmethod
    async def clear(self):
        ...

    @abstractmethod
    async def keys(self) -> List[str]:
        ...

    @abstractmethod
    def size(self) -> int:
        ...


class MemoryCache(CacheBackend):
    """In-process cache with LRU eviction."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.evictions = 0

    def _evict_if_needed(self):
        """Evict least recently used entries past capacity."""
        while len(self.entries) > self.max_size:
            self.entries.popitem(last=False)
            self.evictions += 1

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self.entries.get(key)
        if entry is not None:
            self.entries.move_to_end(key)
        return entry

    async def set(self, key: str, entry: CacheEntry):
        self.entries[key] = entry
        self.entries.move_to_end(key)
        self._evict_if_needed()

    async def delete(self, key: str):
        self.entries.pop(key, None)

    async def clear(self):
        self.entries.clear()

    async def keys(self) -> List[str]:
        return list(self.entries)

    def size(self) -> int:
        return len(self.entries)


class DiskCache(CacheBackend):
    """
    JSON file cache with an on-disk index.

    Values must be JSON serializable. A small in-memory LRU sits in front of
    the files so hot keys avoid disk reads.
    """

    def __init__(self, cache_dir: str, max_memory_size: int = 100):
        self.cache_dir = ensure_directory(cache_dir)
        self.memory = MemoryCache(max_memory_size)

        self.cache_index_file = os.path.join(cache_dir, "cache_index.json")
        self.cache_index = self._load_cache_index()
        self.index_lock = asyncio.Lock()

        logger.info(f"Initialized DiskCache with directory {cache_dir}")

    def _load_cache_index(self) -> Dict[str, Dict[str, Any]]:
        """Load cache index from disk."""
        if os.path.exists(self.cache_index_file):
            try:
                with open(self.cache_index_file, 'r') as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error loading cache index: {str(e)}")

        return {}

    async def _save_cache_index(self):
        """Save cache index to disk."""
        async with aiofiles.open(self.cache_index_file, 'w') as f:
            await f.write(json.dumps(self.cache_index))

    def _get_cache_path(self, key: str) -> Path:
        """Get file path for a cache key."""
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return Path(self.cache_dir) / f"{digest}.json"

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = await self.memory.get(key)
        if entry is not None:
            return entry

        cache_info = self.cache_index.get(key)
        if not cache_info:
            return None

        file_path = Path(cache_info['path'])
        if not file_path.exists():
            return None

        try:
            async with aiofiles.open(file_path, 'r') as f:
                raw = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading from cache: {str(e)}")
            await self.delete(key)
            return None

        entry = CacheEntry(data=raw['data'], stored_at=raw['stored_at'], ttl=raw['ttl'])
        await self.memory.set(key, entry)
        return entry

    async def set(self, key: str, entry: CacheEntry):
        await self.memory.set(key, entry)

        file_path = self._get_cache_path(key)
        payload = json.dumps(
            {"data": entry.data, "stored_at": entry.stored_at, "ttl": entry.ttl},
            default=str
        )
        async with aiofiles.open(file_path, 'w') as f:
            await f.write(payload)

        async with self.index_lock:
            self.cache_index[key] = {
                'path': str(file_path),
                'stored_at': entry.stored_at,
                'ttl': entry.ttl
            }
            await self._save_cache_index()

    async def delete(self, key: str):
        await self.memory.delete(key)

        async with self.index_lock:
            cache_info = self.cache_index.pop(key, None)
            if cache_info is None:
                return
            file_path = Path(cache_info['path'])
            if file_path.exists():
                file_path.unlink()
            await self._save_cache_index()

    async def clear(self):
        await self.memory.clear()

        async with self.index_lock:
            for file_path in Path(self.cache_dir).glob("*.json"):
                if str(file_path) != self.cache_index_file:
                    file_path.unlink()
            self.cache_index = {}
            await self._save_cache_index()

        logger.info("Cleared disk cache")

    async def keys(self) -> List[str]:
        return list(self.cache_index)

    def size(self) -> int:
        return len(self.cache_index)


class CacheManager:
    """
    TTL cache consulted before any provider network call.

    Features:
    - Freshness check against each entry's own TTL
    - At most one in-flight fetch per key
    - Expired entry cleanup
    - Hit/miss metrics
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time
    ):
        self.backend = backend or MemoryCache()
        self.metrics = metrics
        self.clock = clock

        self._inflight: Dict[str, asyncio.Future] = {}

        # Performance tracking
        self.hits = 0
        self.misses = 0
        self.coalesced = 0

        logger.info(f"Initialized CacheManager with {type(self.backend).__name__}")

    @classmethod
    def from_config(cls, config: Config, metrics: Optional[MetricsCollector] = None) -> 'CacheManager':
        if config.cache.backend == "disk":
            backend = DiskCache(config.cache.cache_dir, max_memory_size=min(100, config.cache.max_size))
        else:
            backend = MemoryCache(config.cache.max_size)
        return cls(backend=backend, metrics=metrics)

    async def get(self, key: str) -> Optional[Any]:
        """
        Get a fresh item from cache.

        Args:
            key: Cache key

        Returns:
            Cached data or None if missing or expired
        """
        entry = await self._fresh_entry(key)
        return entry.data if entry is not None else None

    async def _fresh_entry(self, key: str) -> Optional[CacheEntry]:
        """Fresh entry for a key, counting the hit or miss. A cached None is a hit."""
        entry = await self.backend.get(key)
        if entry is not None and entry.is_fresh(self.clock()):
            self.hits += 1
            if self.metrics:
                self.metrics.record_cache_hit()
            logger.debug(f"Cache hit for {key}")
            return entry

        if entry is not None:
            await self.backend.delete(key)

        self.misses += 1
        if self.metrics:
            self.metrics.record_cache_miss()
        return None

    async def set(self, key: str, value: Any, ttl: float):
        """
        Set item in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds
        """
        await self.backend.set(key, CacheEntry(data=value, stored_at=self.clock(), ttl=ttl))

    async def delete(self, key: str):
        """Delete item from cache."""
        await self.backend.delete(key)

    async def clear(self):
        """Clear all cache."""
        await self.backend.clear()

    async def get_or_fetch(
        self,
        key: str,
        ttl: float,
        fetch: Callable[[], Awaitable[Any]]
    ) -> Tuple[Any, bool]:
        """
        Return the cached value for a key, fetching it on a miss.

        Concurrent misses on the same key share a single fetch. Callers that
        joined someone else's fetch get the shared result tagged as cached,
        since they spent no quota of their own.

        Args:
            key: Cache key
            ttl: Time to live for a freshly fetched value, in seconds
            fetch: Coroutine factory producing the value

        Returns:
            (value, cached) tuple
        """
        entry = await self._fresh_entry(key)
        if entry is not None:
            return entry.data, True

        inflight = self._inflight.get(key)
        if inflight is not None:
            self.coalesced += 1
            return await asyncio.shield(inflight), True

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await fetch()
            await self.set(key, value, ttl)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Waiters re-raise it; mark it retrieved for the no-waiter case
            future.exception()
            raise
        else:
            future.set_result(value)
            return value, False
        finally:
            self._inflight.pop(key, None)

    async def cleanup_expired(self) -> int:
        """Clean up expired cache entries."""
        now = self.clock()
        expired_keys = []

        for key in await self.backend.keys():
            entry = await self.backend.get(key)
            if entry is not None and not entry.is_fresh(now):
                expired_keys.append(key)

        for key in expired_keys:
            await self.backend.delete(key)

        logger.info(f"Cleaned up {len(expired_keys)} expired cache entries")
        return len(expired_keys)

    def size(self) -> int:
        return self.backend.size()

    def get_metrics(self) -> Dict[str, Any]:
        """Get cache performance metrics."""
        total_requests = self.hits + self.misses
        hit_rate = (self.hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": self.size(),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": hit_rate,
            "coalesced": self.coalesced,
            "evictions": getattr(self.backend, "evictions", 0)
        }
