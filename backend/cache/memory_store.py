"""
Local Cache Implementation
本地缓存实现

Thread-safe bounded in-memory cache for image metadata records.

Features:
- Thread-safe operations with Lock
- LRU eviction when capacity is exceeded
- Optional per-entry expiry, removed by an incremental sweep
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """
    Cache entry data structure
    缓存条目数据结构
    """
    key: str
    value: Any
    expires_at: Optional[float] = None   # monotonic seconds, None -> no expiry

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class LocalCache:
    """
    Bounded LRU cache
    有界 LRU 缓存

    Insertion order is the baseline order; a hit moves the key to the
    freshest end and eviction always removes from the oldest end.
    """

    def __init__(
        self,
        capacity: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize local cache

        Args:
            capacity: Maximum number of entries to keep
            clock: Monotonic time source (injectable for tests)
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._expiry: Dict[str, float] = {}
        self._lock = Lock()
        self._capacity = capacity
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._store

    def get(self, key: str) -> Optional[Any]:
        """
        Get value by key, refreshing its recency
        获取缓存值并刷新 LRU 顺序

        Returns:
            The cached value, or None if absent or expired
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock()):
                self._remove_locked(key)
                self._misses += 1
                return None
            self._store.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> Optional[str]:
        """
        Store value, evicting the least recently used entry when full
        存储缓存值

        Args:
            key: Lookup key
            value: Record to cache
            ttl: Optional lifetime in seconds; None or <= 0 means no expiry

        Returns:
            The key evicted to make room, if any
        """
        expires_at = None
        if ttl is not None and ttl > 0:
            expires_at = self._clock() + ttl

        evicted = None
        with self._lock:
            if key in self._store:
                self._store.move_to_end(key)
            elif len(self._store) >= self._capacity:
                oldest_key, _ = self._store.popitem(last=False)
                evicted = oldest_key
                self._expiry.pop(oldest_key, None)
                self._evictions += 1
                logger.debug(f"[LocalCache] LRU evicted: {oldest_key}")

            self._store[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
            if expires_at is None:
                self._expiry.pop(key, None)
            else:
                self._expiry[key] = expires_at
        return evicted

    def delete(self, key: str) -> bool:
        """
        Delete entry
        删除缓存条目

        Returns:
            True if deleted, False if not found
        """
        with self._lock:
            return self._remove_locked(key)

    def delete_many(self, keys: List[str]) -> int:
        with self._lock:
            return sum(1 for key in keys if self._remove_locked(key))

    def clear(self) -> int:
        """
        Clear all entries
        清空所有缓存

        Returns:
            Number of entries deleted
        """
        with self._lock:
            count = len(self._store)
            self._store.clear()
            self._expiry.clear()
            return count

    def keys(self) -> List[str]:
        """Keys in LRU order (oldest first)."""
        with self._lock:
            return list(self._store.keys())

    async def sweep_expired(self, batch_size: int = 100) -> int:
        """
        Remove expired entries incrementally
        增量清理过期条目

        The expiry table is snapshotted once; deletions then happen in
        batches, each under its own short lock, yielding between batches.

        Returns:
            Number of entries removed
        """
        with self._lock:
            candidates = list(self._expiry.items())

        removed = 0
        for start in range(0, len(candidates), batch_size):
            now = self._clock()
            with self._lock:
                for key, expires_at in candidates[start:start + batch_size]:
                    if expires_at > now:
                        continue
                    # Skip keys re-set with a different expiry since the snapshot
                    if self._expiry.get(key) != expires_at:
                        continue
                    self._remove_locked(key)
                    removed += 1
            await asyncio.sleep(0)

        if removed:
            logger.debug(f"[LocalCache] Swept {removed} expired entries")
        return removed

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics
        获取缓存统计信息
        """
        with self._lock:
            return {
                "size": len(self._store),
                "capacity": self._capacity,
                "expiring_entries": len(self._expiry),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def _remove_locked(self, key: str) -> bool:
        """Remove a key (internal, assumes lock held)."""
        self._expiry.pop(key, None)
        return self._store.pop(key, None) is not None
