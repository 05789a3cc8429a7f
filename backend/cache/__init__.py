"""
Metadata Cache Module
元数据缓存模块

Two-tier cache for image metadata records: a bounded in-process LRU map
and an optional Redis tier with automatic failover and reconnect.
"""

from .memory_store import LocalCache, CacheEntry
from .redis_adapter import RedisCacheAdapter, ConnectionState, ExternalCacheState
from .cache_facade import CacheFacade
from .routes import router as cache_router, health_router

__all__ = [
    "LocalCache",
    "CacheEntry",
    "RedisCacheAdapter",
    "ConnectionState",
    "ExternalCacheState",
    "CacheFacade",
    "cache_router",
    "health_router",
]
