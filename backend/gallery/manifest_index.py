"""
Manifest Index

Immutable in-memory snapshot of the image manifest with random and exact
lookups. The builder replaces the whole snapshot in one reference swap, so
readers never observe a partially built index and never need a lock.
"""

import logging
import random
from typing import Dict, List, Optional, Tuple

from .models import IndexedImage, ManifestDocument

logger = logging.getLogger(__name__)


class ManifestSnapshot:
    """Read-only view over one manifest document."""

    def __init__(self, document: ManifestDocument):
        by_directory: Dict[str, List[IndexedImage]] = {}
        exact: Dict[Tuple[str, str], IndexedImage] = {}
        flat: List[IndexedImage] = []

        for directory in sorted(document):
            files = document[directory] or {}
            images = [
                IndexedImage(directory=directory, filename=filename, mtime=files[filename])
                for filename in sorted(files)
            ]
            by_directory[directory] = images
            flat.extend(images)
            for image in images:
                exact[(directory, image.filename)] = image

        self._document = {d: dict(document[d] or {}) for d in document}
        self._by_directory = by_directory
        self._exact = exact
        self._flat = flat

    @property
    def document(self) -> ManifestDocument:
        return {d: dict(files) for d, files in self._document.items()}

    @property
    def count(self) -> int:
        return len(self._flat)

    def directories(self) -> List[str]:
        return list(self._by_directory)

    def images(self) -> List[IndexedImage]:
        return list(self._flat)

    def has_directory(self, directory: str) -> bool:
        top, _, nested = directory.strip("/").partition("/")
        if top not in self._by_directory:
            return False
        return not nested or bool(self.candidates(directory))

    def candidates(self, directory: Optional[str] = None) -> List[IndexedImage]:
        """
        Candidate pool for a random draw.

        ``None`` -> every image; ``"_root"`` or a first-level name -> that key;
        ``"pets/cats"`` -> images under ``pets`` whose filename starts with ``cats/``.
        """
        if directory is None:
            return self._flat
        directory = directory.strip("/")
        top, _, nested = directory.partition("/")
        images = self._by_directory.get(top, [])
        if not nested:
            return images
        prefix = nested + "/"
        return [image for image in images if image.filename.startswith(prefix)]

    def find_exact(self, directory: str, filename: str) -> Optional[IndexedImage]:
        return self._exact.get((directory, filename))


class ManifestIndex:
    """
    Holder of the current snapshot.

    Usage:
        index = ManifestIndex()
        index.swap(ManifestSnapshot(document))
        image = index.pick_random("pets")
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._snapshot: Optional[ManifestSnapshot] = None
        self._rng = rng or random.SystemRandom()

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> Optional[ManifestSnapshot]:
        return self._snapshot

    @property
    def count(self) -> int:
        snapshot = self._snapshot
        return snapshot.count if snapshot else 0

    def swap(self, snapshot: ManifestSnapshot) -> Optional[ManifestSnapshot]:
        """Install a new snapshot; returns the previous one."""
        previous, self._snapshot = self._snapshot, snapshot
        logger.info(
            f"[Manifest] Index swapped: {snapshot.count} images in "
            f"{len(snapshot.directories())} directories"
        )
        return previous

    def has_directory(self, directory: str) -> bool:
        snapshot = self._snapshot
        return snapshot is not None and snapshot.has_directory(directory)

    def directories(self) -> List[str]:
        snapshot = self._snapshot
        return snapshot.directories() if snapshot else []

    def pick_random(self, directory: Optional[str] = None) -> Optional[IndexedImage]:
        """Uniform draw from the candidate pool; None when the pool is empty."""
        snapshot = self._snapshot
        if snapshot is None:
            return None
        pool = snapshot.candidates(directory)
        if not pool:
            return None
        return pool[self._rng.randrange(len(pool))]

    def find_exact(self, directory: str, filename: str) -> Optional[IndexedImage]:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return snapshot.find_exact(directory, filename)
