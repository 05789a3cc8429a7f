"""Shared-secret check for the maintenance endpoints."""

import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Query, Request

logger = logging.getLogger(__name__)


def require_update_token(
    request: Request,
    token: Optional[str] = Query(None, description="Server-held update secret"),
) -> None:
    """
    FastAPI dependency: 403 unless ``token`` matches ``UPDATE_TOKEN``.

    An unset server token rejects every request.
    """
    expected = (request.app.state.settings.update_token or "").strip()
    supplied = (token or "").strip()
    if not expected or not supplied or not hmac.compare_digest(
        supplied.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning(f"Rejected maintenance request to {request.url.path}")
        raise HTTPException(status_code=403, detail="Invalid or missing token")
