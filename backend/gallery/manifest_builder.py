"""
Manifest Builder

Walks the image root and produces the manifest document:

    {
        "_root": {"a.webp": "2025-01-01 00:00:00"},
        "pets":  {"b.png": "2025-01-02 00:00:00", "cats/c.png": "..."}
    }

Keys are first-level directories (``_root`` for top-level files). Deeper
files stay under their first-level directory with a nested filename.

Runs are single-flight: a manual trigger joins an in-flight run (or waits
out an unpersisted lazy run and then starts its own), a timer trigger
during an in-flight run is skipped.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from config import Settings
from .json_store import safe_read_json, safe_write_json
from .manifest_index import ManifestIndex, ManifestSnapshot
from .metadata import format_mtime, is_image_file, resolve_timezone
from .models import ROOT_KEY, ManifestDocument

if TYPE_CHECKING:
    from cache.cache_facade import CacheFacade

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """Outcome of one manifest rebuild."""
    count: int
    directories: int
    removed: int
    persisted: bool
    trigger: str


class ManifestBuilder:
    """
    Single writer of the manifest index.

    Usage:
        builder = ManifestBuilder(settings, index, cache)
        await builder.load_or_build()
        result = await builder.refresh(trigger="manual")
    """

    def __init__(
        self,
        settings: Settings,
        index: ManifestIndex,
        cache: Optional["CacheFacade"] = None,
    ):
        self._root = Path(settings.img_dir)
        self._manifest_file = Path(settings.manifest_file)
        self._tz = resolve_timezone(settings.timezone)
        self._interval = settings.rebuild_interval
        self._index = index
        self._cache = cache
        self._inflight: Optional[asyncio.Task] = None
        self._inflight_trigger: Optional[str] = None
        self._timer_task: Optional[asyncio.Task] = None

    @property
    def manifest_file(self) -> Path:
        return self._manifest_file

    @property
    def running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # ============================================
    # Scan
    # ============================================

    def build(self) -> ManifestDocument:
        """
        Scan the image root (blocking).

        Raises:
            FileNotFoundError: if the image root does not exist.
        """
        if not self._root.is_dir():
            raise FileNotFoundError(f"Image directory not found: {self._root}")

        document: ManifestDocument = {ROOT_KEY: {}}
        for dirpath, dirnames, filenames in os.walk(self._root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            parts = Path(dirpath).relative_to(self._root).parts

            if not parts:
                # Empty first-level directories are still listed
                for dirname in dirnames:
                    document.setdefault(dirname, {})

            for name in sorted(filenames):
                if name.startswith(".") or not is_image_file(name):
                    continue
                try:
                    stats = os.stat(os.path.join(dirpath, name))
                except FileNotFoundError:
                    continue

                if parts:
                    key, filename = parts[0], "/".join(parts[1:] + (name,))
                else:
                    key, filename = ROOT_KEY, name
                document.setdefault(key, {})[filename] = format_mtime(stats.st_mtime, self._tz)

        return document

    # ============================================
    # Refresh
    # ============================================

    async def refresh(self, trigger: str = "manual") -> Optional[RefreshResult]:
        """
        Rebuild, persist and swap the index.

        Returns:
            The run's result, or None when a timer run was skipped.

        Raises:
            ManifestWriteConflict: if the document could not be persisted.
            FileNotFoundError: if the image root is missing.
        """
        if self.running:
            if trigger == "timer":
                logger.info("[Manifest] Rebuild already in progress, skipping timer run")
                return None
            if self._inflight_trigger == "lazy" and trigger != "lazy":
                # A lazy run is not persisted; wait for it, then run our own
                logger.info(f"[Manifest] Lazy build in progress, {trigger} trigger runs after it")
                await asyncio.wait({self._inflight})
                return await self.refresh(trigger)
            logger.info(f"[Manifest] Rebuild already in progress, {trigger} trigger joins it")
            return await asyncio.shield(self._inflight)

        self._inflight = asyncio.create_task(self._run(trigger))
        self._inflight_trigger = trigger
        # Shielded so a disconnecting client does not abort the rebuild
        return await asyncio.shield(self._inflight)

    async def _run(self, trigger: str) -> RefreshResult:
        logger.info(f"[Manifest] Rebuilding from {self._root} ({trigger})")
        document = await asyncio.to_thread(self.build)

        persisted = trigger != "lazy"
        if persisted:
            await safe_write_json(self._manifest_file, document)

        snapshot = ManifestSnapshot(document)
        previous = self._index.swap(snapshot)
        removed = await self._invalidate(previous, snapshot)

        result = RefreshResult(
            count=snapshot.count,
            directories=len(snapshot.directories()),
            removed=removed,
            persisted=persisted,
            trigger=trigger,
        )
        logger.info(f"[Manifest] Indexed {result.count} images, {removed} removed since last build")
        return result

    async def _invalidate(
        self,
        previous: Optional[ManifestSnapshot],
        snapshot: ManifestSnapshot,
    ) -> int:
        """Drop local entries and cache entries of vanished images."""
        if previous is None:
            return 0
        current = {image.relative_path for image in snapshot.images()}
        vanished = [image for image in previous.images() if image.relative_path not in current]
        if self._cache is not None:
            self._cache.invalidate_local()
            for image in vanished:
                await self._cache.delete(image.cache_key())
        return len(vanished)

    # ============================================
    # Loading
    # ============================================

    async def load_or_build(self) -> None:
        """Startup: load the persisted manifest, or build and persist one."""
        document = self._validate_document(safe_read_json(self._manifest_file))
        if document is not None:
            self._index.swap(ManifestSnapshot(document))
            logger.info(f"[Manifest] Loaded {self._manifest_file}")
            return
        try:
            await self.refresh(trigger="startup")
        except Exception as e:
            # Left unloaded; the first request retries lazily
            logger.error(f"[Manifest] Initial build failed: {e}")

    async def ensure_loaded(self) -> None:
        """Build on first use when no snapshot exists yet."""
        if self._index.loaded:
            return
        await self.refresh(trigger="lazy")

    def _validate_document(self, data: Any) -> Optional[ManifestDocument]:
        if data is None:
            return None
        if not isinstance(data, dict):
            logger.warning(f"[Manifest] Ignoring {self._manifest_file}: not a JSON object")
            return None
        document: ManifestDocument = {ROOT_KEY: {}}
        for directory, files in data.items():
            if not isinstance(files, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in files.items()
            ):
                logger.warning(f"[Manifest] Ignoring {self._manifest_file}: bad entry {directory!r}")
                return None
            document[directory] = dict(files)
        return document

    # ============================================
    # Timer
    # ============================================

    async def start(self) -> None:
        if self._interval <= 0:
            return
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._timer_loop())
            logger.info(f"[Manifest] Rebuild timer every {self._interval}s")

    async def close(self) -> None:
        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
        self._timer_task = None
        # Wait for an in-flight rebuild
        if self.running:
            try:
                await self._inflight
            except Exception as e:
                logger.warning(f"[Manifest] In-flight rebuild failed during shutdown: {e}")

    async def _timer_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.refresh(trigger="timer")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[Manifest] Scheduled rebuild failed: {e}")
