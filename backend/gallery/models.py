"""
Gallery Models

Canonical record shapes shared by the index, the cache layer and the routes.
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from posixpath import normpath

from pydantic import BaseModel, Field, field_validator, model_validator


ROOT_KEY = "_root"

# directory key -> {filename -> "YYYY-MM-DD HH:MM:SS"}
ManifestDocument = Dict[str, Dict[str, str]]

# Field names written by older deployments
_LEGACY_FIELDS = {
    "filename": "name",
    "modifiedAt": "mtime",
    "modified_at": "mtime",
    "relativePath": "path",
    "relative_path": "path",
}


def normalize_relative_path(value: str) -> str:
    """
    Normalize a root-relative path to posix form without a leading slash.

    Raises:
        ValueError: if the path escapes the root.
    """
    cleaned = value.replace("\\", "/").lstrip("/")
    if not cleaned:
        raise ValueError("path must not be empty")
    parts = cleaned.split("/")
    if ".." in parts:
        raise ValueError(f"path must not contain '..': {value!r}")
    normalized = normpath(cleaned)
    if normalized in (".", "") or normalized.startswith("../"):
        raise ValueError(f"invalid relative path: {value!r}")
    return normalized


class ImageRecord(BaseModel):
    """Descriptive metadata for a single image file."""
    name: str = Field(..., description="File name")
    size: int = Field(..., ge=0, description="Size in bytes")
    mtime: str = Field(..., description="Modification time, YYYY-MM-DD HH:MM:SS")
    path: str = Field(..., description="Posix path relative to the image root")

    @model_validator(mode="before")
    @classmethod
    def _rename_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        renamed = dict(data)
        for legacy, current in _LEGACY_FIELDS.items():
            if legacy in renamed:
                value = renamed.pop(legacy)
                renamed.setdefault(current, value)
        return renamed

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        return normalize_relative_path(value)


@dataclass(frozen=True)
class IndexedImage:
    """An image as known to the manifest index."""
    directory: str
    filename: str
    mtime: str

    @property
    def relative_path(self) -> str:
        if self.directory == ROOT_KEY:
            return self.filename
        return f"{self.directory}/{self.filename}"

    def cache_key(self) -> str:
        return image_cache_key(self.relative_path)


def image_cache_key(relative_path: str) -> str:
    """Cache key used for exact lookups."""
    return f"image:{relative_path}"


@dataclass
class ImageLookup:
    """Result of resolving an image request."""
    record: ImageRecord
    file_path: Path
    cache_hit: Optional[bool] = None   # None -> cache not consulted
