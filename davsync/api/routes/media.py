"""
Media routes: /media
"""

from typing import Optional

from fastapi import APIRouter, Query

from davsync.api.models.media import MediaListResponse
from davsync.services.media_service import media_service

router = APIRouter(tags=["Media"])


@router.get("/media", response_model=MediaListResponse)
async def list_media(
    limit: int = Query(100, ge=1, le=1000, description="Page size"),
    offset: int = Query(0, ge=0),
    folder: Optional[str] = Query(None, description="Only items under this remote folder"),
):
    """Catalog timeline, newest capture first."""
    return media_service.list_media(limit=limit, offset=offset, folder=folder)
