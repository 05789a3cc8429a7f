"""
Gallery API Routes

Provides endpoints for:
- GET /                              random image from the whole gallery
- GET /{directory}                   random image from one directory
- GET /{directory}/{filename}        one specific image
- GET /{directory}/{nested}          random image from a nested directory
- GET /update?token=...              rebuild the manifest

Add ``?json=1`` to an image endpoint to get ``{name, size, mtime, path}``
instead of the file bytes.
"""

import logging
import mimetypes
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse

from .errors import ImageNotFoundError, ManifestWriteConflict
from .metadata import is_image_file
from .models import ImageLookup
from .security import require_update_token
from .service import ImageService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Images"])


def get_image_service(request: Request) -> ImageService:
    return request.app.state.image_service


def _image_response(lookup: ImageLookup, want_json: bool, random_pick: bool):
    """Build the JSON or file response with cache headers."""
    if lookup.cache_hit is None:
        cache_state = "BYPASS"
    else:
        cache_state = "HIT" if lookup.cache_hit else "MISS"
    headers = {"X-Cache": cache_state}
    if random_pick:
        # Each request should draw again
        headers["Cache-Control"] = "no-store"

    if want_json:
        return JSONResponse(content=lookup.record.model_dump(), headers=headers)

    media_type, _ = mimetypes.guess_type(lookup.file_path.name)
    return FileResponse(
        lookup.file_path,
        media_type=media_type or "application/octet-stream",
        headers=headers,
    )


# ============================================
# Maintenance
# ============================================

@router.get("/update", dependencies=[Depends(require_update_token)])
async def update_manifest(service: ImageService = Depends(get_image_service)):
    """
    Rebuild and persist the image manifest.

    Example:
        GET /update?token=secret
    """
    try:
        result = await service.builder.refresh(trigger="manual")
    except ManifestWriteConflict as e:
        logger.error(f"[Manifest] Update failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to write {service.builder.manifest_file.name}")
    except FileNotFoundError as e:
        logger.error(f"[Manifest] Update failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to read image directory")

    return {
        "message": "Image list updated",
        "count": result.count,
        "listFile": service.builder.manifest_file.name,
    }


# ============================================
# Images
# ============================================

@router.get("/")
async def random_image(
    as_json: Optional[str] = Query(None, alias="json", description="1 -> JSON metadata"),
    service: ImageService = Depends(get_image_service),
):
    """Random image across every directory."""
    try:
        lookup = await service.random_image()
    except ImageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _image_response(lookup, as_json == "1", random_pick=True)


@router.get("/{directory}")
async def random_image_in_directory(
    directory: str,
    as_json: Optional[str] = Query(None, alias="json", description="1 -> JSON metadata"),
    service: ImageService = Depends(get_image_service),
):
    """Random image within one directory (``_root`` for top-level files)."""
    try:
        lookup = await service.random_image(directory)
    except ImageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _image_response(lookup, as_json == "1", random_pick=True)


@router.get("/{directory}/{filename:path}")
async def exact_image(
    directory: str,
    filename: str,
    as_json: Optional[str] = Query(None, alias="json", description="1 -> JSON metadata"),
    service: ImageService = Depends(get_image_service),
):
    """
    One specific image.

    A path without an image extension names a nested directory instead,
    e.g. ``/pets/cats`` draws from ``pets/cats/``.
    """
    random_pick = not is_image_file(filename)
    try:
        if random_pick:
            lookup = await service.random_image(f"{directory}/{filename}")
        else:
            lookup = await service.exact_image(directory, filename)
    except ImageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _image_response(lookup, as_json == "1", random_pick=random_pick)
