"""
Folder-related API models: selected folders and remote folder discovery.
"""

from typing import Optional

from pydantic import BaseModel


class FolderModel(BaseModel):
    """A remote folder selected for indexing."""
    remote_path: str
    display_name: str
    added_timestamp: int


class FolderRequest(BaseModel):
    """Select or deselect a remote folder."""
    remote_path: str
    display_name: Optional[str] = None


class FoldersResponse(BaseModel):
    """Selected folders."""
    folders: list[FolderModel]
    count: int


class RemoteFolderModel(BaseModel):
    """A folder found on the server."""
    remote_path: str
    name: str


class RemoteFoldersResponse(BaseModel):
    """Folders discovered under a root."""
    root: str
    folders: list[RemoteFolderModel]
    count: int
