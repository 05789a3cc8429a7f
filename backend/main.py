#!/usr/bin/env python3
"""
Gallery Server

FastAPI application serving random or specific images from a directory
tree, with a two-tier metadata cache and a JSON manifest index.

Run:
    cd backend
    python main.py
    # or
    uvicorn main:create_app --factory --host 127.0.0.1 --port 3000
"""

import logging
import random
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cache import CacheFacade, LocalCache, RedisCacheAdapter, cache_router, health_router
from cache.redis_adapter import default_client_factory
from config import Settings
from gallery import ImageService, ManifestBuilder, ManifestIndex
from gallery import router as gallery_router

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_app(
    settings: Optional[Settings] = None,
    redis_client_factory: Optional[Callable[..., Any]] = None,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    """
    Build the application and its services.

    Services live on ``app.state``; nothing is a module-level singleton,
    so tests can create independent apps side by side.
    """
    if settings is None:
        load_dotenv()
        settings = Settings.from_env()
        configure_logging(settings.log_level)

    local = LocalCache(capacity=settings.local_cache_size)
    external = None
    if settings.cache_enabled and settings.redis.enabled:
        external = RedisCacheAdapter(
            settings.redis,
            client_factory=redis_client_factory or default_client_factory,
        )
    cache = CacheFacade(settings, local=local, external=external)
    index = ManifestIndex(rng=rng)
    builder = ManifestBuilder(settings, index, cache)
    image_service = ImageService(settings, index, builder, cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Serving images from {settings.img_dir}")
        await cache.start()
        await builder.load_or_build()
        await builder.start()
        yield
        await builder.close()
        await cache.close()

    app = FastAPI(
        title="Gallery Server",
        description="Random and exact image lookups with a two-tier metadata cache.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.cache = cache
    app.state.image_service = image_service

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        detail = f"Internal server error: {exc}" if settings.debug else "Internal server error"
        return JSONResponse(status_code=500, content={"detail": detail})

    # Fixed prefixes first; the gallery router ends in catch-all paths
    app.include_router(health_router)
    app.include_router(cache_router)
    app.include_router(gallery_router)
    return app


if __name__ == "__main__":
    import uvicorn

    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
