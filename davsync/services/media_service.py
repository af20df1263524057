"""
Media service: catalog timeline queries.
"""

from typing import Optional

from davsync.api.models.media import MediaItemModel, MediaListResponse
from davsync.container import get_container


class MediaService:

    def list_media(self, limit: int = 100, offset: int = 0, folder: Optional[str] = None) -> MediaListResponse:
        items = get_container().db.list_media(limit=limit, offset=offset, folder=folder)
        models = [
            MediaItemModel(
                remote_path=item.remote_path,
                file_name=item.file_name,
                mime_type=item.mime_type,
                size=item.size,
                last_modified=item.last_modified,
                capture_timestamp=item.capture_timestamp,
                timeline_sort_key=item.timeline_sort_key,
                kind=item.kind.value,
                thumbnail_status=item.thumbnail_status.value,
                thumbnail_path=item.thumbnail_path,
                thumbnail_last_error=item.thumbnail_last_error,
            )
            for item in items
        ]
        return MediaListResponse(items=models, count=len(models), limit=limit, offset=offset)


# Singleton
media_service = MediaService()
