"""
Gallery Module

Serves random or specific images from a directory tree.

Features:
- Manifest index of the image root, persisted as JSON
- Uniform random draws across the gallery or one directory
- Exact lookups backed by the two-tier metadata cache
- Token-protected manifest rebuild
"""

from .routes_fastapi import router
from .service import ImageService
from .manifest_index import ManifestIndex, ManifestSnapshot
from .manifest_builder import ManifestBuilder, RefreshResult
from .models import ImageRecord, IndexedImage, ImageLookup

__all__ = [
    "router",
    "ImageService",
    "ManifestIndex",
    "ManifestSnapshot",
    "ManifestBuilder",
    "RefreshResult",
    "ImageRecord",
    "IndexedImage",
    "ImageLookup",
]
