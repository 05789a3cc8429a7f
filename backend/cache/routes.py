"""
Cache API Routes
缓存 API 路由

Provides HTTP endpoints for cache administration:
- GET  /api/cache/stats        - Cache statistics (both tiers)
- POST /api/cache/reconnect    - Reset retries and reconnect to Redis now
- POST /api/cache/reset        - Reset the Redis retry counter
- POST /api/cache/clear        - Drop every cached image record
- GET  /api/health             - Health check

Mutating endpoints require ``?token=`` like ``/update``.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from gallery.security import require_update_token
from .cache_facade import CacheFacade

router = APIRouter(prefix="/api/cache", tags=["cache"])
health_router = APIRouter(prefix="/api", tags=["cache"])


def get_cache(request: Request) -> CacheFacade:
    return request.app.state.cache


# ============================================
# Response Models
# ============================================

class CacheStatsResponse(BaseModel):
    """Response model for stats endpoint"""
    success: bool
    stats: Dict[str, Any]


class ReconnectResponse(BaseModel):
    """Response model for reconnect endpoint"""
    success: bool
    connected: bool
    redis: Optional[Dict[str, Any]] = None


class ClearResponse(BaseModel):
    """Response model for clear endpoint"""
    success: bool
    deleted_count: int
    message: str


# ============================================
# API Endpoints
# ============================================

@router.get("/stats", response_model=CacheStatsResponse)
async def get_cache_stats(cache: CacheFacade = Depends(get_cache)):
    """
    Get cache statistics
    获取缓存统计信息
    """
    return CacheStatsResponse(success=True, stats=await cache.stats())


@router.post("/reconnect", response_model=ReconnectResponse, dependencies=[Depends(require_update_token)])
async def reconnect_cache(cache: CacheFacade = Depends(get_cache)):
    """
    Manually reconnect the external cache
    手动重连 Redis

    Clears the retry counter first, so this also revives an adapter that
    gave up after too many failures.
    """
    connected = await cache.reconnect()
    redis = cache.external.status() if cache.external is not None else None
    return ReconnectResponse(success=True, connected=connected, redis=redis)


@router.post("/reset", response_model=ReconnectResponse, dependencies=[Depends(require_update_token)])
async def reset_retries(cache: CacheFacade = Depends(get_cache)):
    """
    Reset the retry counter; the scheduler reconnects on its next tick
    重置重连计数器
    """
    cache.reset_retries()
    external = cache.external
    return ReconnectResponse(
        success=True,
        connected=external is not None and external.healthy,
        redis=external.status() if external is not None else None,
    )


@router.post("/clear", response_model=ClearResponse, dependencies=[Depends(require_update_token)])
async def clear_cache(cache: CacheFacade = Depends(get_cache)):
    """
    Clear all cache entries
    清空所有缓存
    """
    count = await cache.clear()
    return ClearResponse(
        success=True,
        deleted_count=count,
        message=f"Cleared {count} cache entries",
    )


@health_router.get("/health")
async def health_check(request: Request, cache: CacheFacade = Depends(get_cache)):
    """Health check endpoint."""
    external = cache.external
    return {
        "status": "healthy",
        "service": "gallery",
        "images": request.app.state.image_service.index.count,
        "redis": external.state.value if external is not None else "disabled",
    }
