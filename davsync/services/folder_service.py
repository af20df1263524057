"""
Folder service: selected folder management and remote folder discovery.
"""

import logging
from typing import Optional

from davsync.api.models.folders import (
    FolderModel,
    FoldersResponse,
    RemoteFolderModel,
    RemoteFoldersResponse,
)
from davsync.container import get_container
from davsync.errors import ErrorCategory
from davsync.paths import normalize_remote_path

logger = logging.getLogger(__name__)


class FolderService:
    """Selected folders live in the catalog; discovery goes to the server."""

    def list_folders(self) -> FoldersResponse:
        folders = [
            FolderModel(
                remote_path=folder.remote_path,
                display_name=folder.display_name,
                added_timestamp=folder.added_timestamp,
            )
            for folder in get_container().db.get_selected_folders()
        ]
        return FoldersResponse(folders=folders, count=len(folders))

    def add_folder(self, remote_path: str, display_name: Optional[str] = None) -> FolderModel:
        if not remote_path or not remote_path.strip():
            raise ValueError("remote_path must not be empty")
        folder = get_container().orchestrator.select_folder(remote_path, display_name)
        return FolderModel(
            remote_path=folder.remote_path,
            display_name=folder.display_name,
            added_timestamp=folder.added_timestamp,
        )

    def remove_folder(self, remote_path: str) -> int:
        """Returns the number of catalog items removed. Raises KeyError if not selected."""
        return get_container().orchestrator.deselect_folder(remote_path)

    async def discover(self, root: str = "/") -> RemoteFoldersResponse:
        container = get_container()
        session = container.sessions.get_session()
        if session is None:
            raise EnvironmentError("No server session configured")
        normalized = normalize_remote_path(root)
        async with container.client_factory(session) as client:
            result = await client.discover_folders(normalized)
        if not result.ok:
            if result.error.category == ErrorCategory.NOT_FOUND:
                raise KeyError(normalized)
            raise ConnectionError(f"Folder discovery failed: {result.error.code}")
        folders = [RemoteFolderModel(remote_path=entry.remote_path, name=entry.name) for entry in result.data]
        return RemoteFoldersResponse(root=normalized, folders=folders, count=len(folders))


# Singleton
folder_service = FolderService()
