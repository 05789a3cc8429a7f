"""
Cache Facade
缓存门面

Single get/set/delete entry point over the two cache tiers:
- External (Redis) first while it reports healthy
- Local LRU fallback for the single call when the external tier fails
- Local only while the external tier is down or not configured
- Background sweep of expiring local entries
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError

from config import Settings
from gallery.models import ImageRecord
from .memory_store import LocalCache
from .redis_adapter import RedisCacheAdapter

logger = logging.getLogger(__name__)

KEY_PATTERN = "image:*"


class CacheFacade:
    """
    Two-tier metadata cache.

    Only exact image lookups are stored here; random draws never are.
    """

    def __init__(
        self,
        settings: Settings,
        local: Optional[LocalCache] = None,
        external: Optional[RedisCacheAdapter] = None,
    ):
        self._settings = settings
        self._enabled = settings.cache_enabled
        self._local = local if local is not None else LocalCache(capacity=settings.local_cache_size)
        self._external = external
        # Keys written locally while the external tier was unavailable
        self._demoted_keys: Set[str] = set()
        self._fallbacks = 0
        self._cleanup_task: Optional[asyncio.Task] = None

        if self._external is not None:
            self._external.add_connect_listener(self._on_external_connected)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def local(self) -> LocalCache:
        return self._local

    @property
    def external(self) -> Optional[RedisCacheAdapter]:
        return self._external

    def _external_ready(self) -> bool:
        return self._external is not None and self._external.healthy

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Connect the external tier and start the maintenance timer."""
        if not self._enabled:
            logger.info("[CacheFacade] Cache disabled, using no cache")
            return
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.debug(
                f"[CacheFacade] Local cache sweep every {self._settings.map_cleanup_interval}s"
            )
        if self._external is not None:
            await self._external.start()
        else:
            logger.info("[CacheFacade] External cache not configured, using local cache")

    async def close(self) -> None:
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None
        if self._external is not None:
            await self._external.close()
        self._local.clear()
        self._demoted_keys.clear()
        logger.info("[CacheFacade] Closed")

    async def _cleanup_loop(self) -> None:
        """Sweep expired local entries on a fixed interval."""
        while True:
            try:
                await asyncio.sleep(self._settings.map_cleanup_interval)
                await self._local.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[CacheFacade] Local cache sweep error: {e}")

    def _on_external_connected(self) -> None:
        if self._demoted_keys:
            dropped = self._local.delete_many(list(self._demoted_keys))
            logger.info(f"[CacheFacade] External cache restored, dropped {dropped} fallback entries")
        self._demoted_keys.clear()

    # ============================================
    # Operations
    # ============================================

    async def get(self, key: str) -> Optional[ImageRecord]:
        if not self._enabled:
            return None

        if self._external_ready():
            raw = await self._external.get(key)
            if raw is not None:
                record = self._decode(key, raw)
                if record is not None:
                    return record
            elif not self._external.healthy:
                self._fallbacks += 1
                logger.warning(f"[CacheFacade] External get failed, using local cache: {key}")

        record = self._local.get(key)
        if record is not None:
            logger.debug(f"[CacheFacade] Local hit: {key}")
        else:
            logger.debug(f"[CacheFacade] Miss: {key}")
        return record

    async def set(self, key: str, record: ImageRecord, ttl: Optional[int] = None) -> bool:
        """
        Store a record.

        Returns:
            True if the record was stored in either tier.
        """
        if not self._enabled:
            return False

        effective_ttl = ttl if ttl is not None else self._settings.cache_ttl
        if effective_ttl <= 0:
            return False

        if self._external_ready():
            external_ttl = ttl or self._settings.redis.ttl or self._settings.cache_ttl
            if await self._external.set(key, record.model_dump(), external_ttl):
                return True
            self._fallbacks += 1
            logger.warning(f"[CacheFacade] External set failed, using local cache: {key}")

        evicted = self._local.set(key, record, ttl=self._settings.local_cache_ttl or None)
        if self._external is not None:
            self._track_demoted(key, evicted)
        return True

    async def delete(self, key: str) -> bool:
        """Remove a key from both tiers; True if either tier held it."""
        if not self._enabled:
            return False

        deleted = False
        if self._external_ready():
            deleted = await self._external.delete(key)

        if self._local.delete(key):
            deleted = True
        self._demoted_keys.discard(key)
        return deleted

    async def clear(self) -> int:
        """Drop every cached image record from both tiers."""
        if not self._enabled:
            return 0
        removed = 0
        if self._external_ready():
            removed += await self._external.clear(KEY_PATTERN)
        removed += self.invalidate_local()
        return removed

    def invalidate_local(self) -> int:
        """Clear the local tier (files may have moved since it was filled)."""
        count = self._local.clear()
        self._demoted_keys.clear()
        if count:
            logger.info(f"[CacheFacade] Local cache cleared ({count} entries)")
        return count

    async def reconnect(self) -> bool:
        if self._external is None:
            return False
        return await self._external.reconnect()

    def reset_retries(self) -> None:
        if self._external is not None:
            self._external.reset()

    async def stats(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "enabled": self._enabled,
            "local": self._local.stats(),
            "fallbacks": self._fallbacks,
            "demoted_keys": len(self._demoted_keys),
            "config": {
                "ttl": self._settings.cache_ttl,
                "redis_ttl": self._settings.redis.ttl or self._settings.cache_ttl,
                "cleanup_interval": self._settings.map_cleanup_interval,
            },
        }
        if self._external is None:
            data["redis"] = None
        else:
            data["redis"] = self._external.status()
            if self._external.healthy:
                data["redis"].update(await self._external.info())
        return data

    # ============================================
    # Helpers
    # ============================================

    def _track_demoted(self, key: str, evicted: Optional[str]) -> None:
        """Remember a fallback write; forget keys the local tier no longer holds."""
        self._demoted_keys.add(key)
        if evicted is not None:
            self._demoted_keys.discard(evicted)
        # Expired entries leave without an eviction
        if len(self._demoted_keys) > self._local.capacity:
            self._demoted_keys.intersection_update(self._local.keys())

    def _decode(self, key: str, raw: Dict[str, Any]) -> Optional[ImageRecord]:
        try:
            return ImageRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[CacheFacade] Discarding invalid cached record {key}: {e.error_count()} errors")
            return None
