"""
Folder routes: /folders, /folders/remote
"""

import logging

from fastapi import APIRouter, HTTPException, Query

from davsync.api.models.folders import (
    FolderModel,
    FolderRequest,
    FoldersResponse,
    RemoteFoldersResponse,
)
from davsync.services.folder_service import folder_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Folders"])


@router.get("/folders", response_model=FoldersResponse)
async def list_folders():
    """Remote folders selected for indexing."""
    return folder_service.list_folders()


@router.post("/folders", response_model=FolderModel)
async def add_folder(request: FolderRequest):
    """Select a remote folder and start a full sync."""
    try:
        return folder_service.add_folder(request.remote_path, request.display_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/folders")
async def remove_folder(remote_path: str = Query(..., description="Selected remote folder")):
    """Deselect a folder and drop its catalog rows."""
    try:
        removed = folder_service.remove_folder(remote_path)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Folder not selected: {remote_path}")
    return {"status": "removed", "remote_path": remote_path, "removed_items": removed}


@router.get("/folders/remote", response_model=RemoteFoldersResponse)
async def discover_remote_folders(root: str = Query("/", description="Folder to start discovery from")):
    """List folders on the server, bounded in depth and count."""
    try:
        return await folder_service.discover(root)
    except EnvironmentError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Remote folder not found: {root}")
    except ConnectionError as e:
        raise HTTPException(status_code=502, detail=str(e))
