"""
Media-related API models: catalog timeline.
"""

from typing import Optional

from pydantic import BaseModel


class MediaItemModel(BaseModel):
    """One catalogued remote media file."""
    remote_path: str
    file_name: str
    mime_type: str
    size: int
    last_modified: int
    capture_timestamp: Optional[int] = None
    timeline_sort_key: int
    kind: str
    thumbnail_status: str
    thumbnail_path: Optional[str] = None
    thumbnail_last_error: Optional[str] = None


class MediaListResponse(BaseModel):
    """Timeline page."""
    items: list[MediaItemModel]
    count: int
    limit: int
    offset: int
