"""
Image Service

Resolves image requests:
- random draws come from the manifest index and are never cached
- exact lookups go through the cache facade
- every resolved file is re-validated on disk before it is served
"""

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from config import Settings
from .errors import ImageNotFoundError
from .manifest_builder import ManifestBuilder
from .manifest_index import ManifestIndex
from .metadata import build_record, is_image_file, resolve_timezone
from .models import ROOT_KEY, ImageLookup, image_cache_key

if TYPE_CHECKING:
    from cache.cache_facade import CacheFacade

logger = logging.getLogger(__name__)

# Draws attempted before a pool of stale entries is reported as empty
RANDOM_ATTEMPTS = 3


class ImageService:
    """
    Request-level orchestration over index, filesystem and cache.

    Usage:
        service = ImageService(settings, index, builder, cache)
        lookup = await service.exact_image("pets", "b.png")
    """

    def __init__(
        self,
        settings: Settings,
        index: ManifestIndex,
        builder: ManifestBuilder,
        cache: "CacheFacade",
    ):
        self._root = Path(settings.img_dir).resolve()
        self._tz = resolve_timezone(settings.timezone)
        self._index = index
        self._builder = builder
        self._cache = cache

    @property
    def index(self) -> ManifestIndex:
        return self._index

    @property
    def builder(self) -> ManifestBuilder:
        return self._builder

    @property
    def cache(self) -> "CacheFacade":
        return self._cache

    async def random_image(self, directory: Optional[str] = None) -> ImageLookup:
        """
        Draw a random image, optionally restricted to one directory.

        Raises:
            ImageNotFoundError: unknown directory or no (live) images.
        """
        await self._builder.ensure_loaded()

        if directory is not None:
            directory = directory.strip("/")
            if not self._index.has_directory(directory):
                raise ImageNotFoundError(f"Directory not found: {directory}")

        for _ in range(RANDOM_ATTEMPTS):
            image = self._index.pick_random(directory)
            if image is None:
                break
            file_path = self._live_file(image.relative_path)
            if file_path is None:
                logger.info(f"[ImageService] Stale manifest entry skipped: {image.relative_path}")
                continue
            try:
                record = build_record(self._root, file_path, self._tz)
            except FileNotFoundError:
                continue
            return ImageLookup(record=record, file_path=file_path)

        where = directory or "the gallery"
        raise ImageNotFoundError(f"No images in {where}")

    async def exact_image(self, directory: str, filename: str) -> ImageLookup:
        """
        Look up one image by directory and filename.

        ``directory`` may be ``_root`` for top-level files.

        The file on disk is authoritative: images added since the last
        manifest build are served, and the index is consulted only to
        report entries that went stale.

        Raises:
            ImageNotFoundError: missing or stale file, or an invalid path.
        """
        await self._builder.ensure_loaded()

        relative_path = self._relative_path(directory, filename)
        key = image_cache_key(relative_path)
        indexed = self._index.find_exact(*self._index_key(relative_path))

        file_path = self._live_file(relative_path)
        if file_path is None:
            if indexed is not None:
                logger.info(f"[ImageService] Manifest entry is stale: {relative_path}")
            await self._cache.delete(key)
            raise ImageNotFoundError(f"Image not found: {relative_path}")

        cached = await self._cache.get(key)
        if cached is not None:
            return ImageLookup(record=cached, file_path=file_path, cache_hit=True)

        try:
            record = build_record(self._root, file_path, self._tz)
        except FileNotFoundError:
            await self._cache.delete(key)
            raise ImageNotFoundError(f"Image not found: {relative_path}")

        # Shielded so a disconnecting client does not abort cache population
        await asyncio.shield(self._cache.set(key, record))
        return ImageLookup(record=record, file_path=file_path, cache_hit=False)

    # ============================================
    # Path helpers
    # ============================================

    def _relative_path(self, directory: str, filename: str) -> str:
        """Join and validate request segments; traversal is treated as not found."""
        segments = [] if directory == ROOT_KEY else directory.strip("/").split("/")
        segments += filename.strip("/").split("/")
        if any(part in ("", ".", "..") or "\\" in part for part in segments):
            raise ImageNotFoundError("Image not found")
        relative_path = "/".join(segments)
        if not is_image_file(relative_path):
            raise ImageNotFoundError(f"Image not found: {relative_path}")
        return relative_path

    @staticmethod
    def _index_key(relative_path: str) -> tuple:
        top, _, rest = relative_path.partition("/")
        if not rest:
            return ROOT_KEY, top
        return top, rest

    def _live_file(self, relative_path: str) -> Optional[Path]:
        """Absolute path if the file still exists inside the root."""
        candidate = (self._root / relative_path).resolve()
        if not candidate.is_relative_to(self._root):
            return None
        if not candidate.is_file():
            return None
        return candidate
