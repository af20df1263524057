"""
Sync routes: /sync, /sync/now, /sync/retry, /sync/cancel, /sync/status, /sync/diagnostics
"""

import logging

from fastapi import APIRouter, HTTPException

from davsync.api.models.sync import (
    CancelResponse,
    SyncActionResponse,
    SyncDiagnosticsResponse,
    SyncRequest,
    SyncStatusResponse,
)
from davsync.services.sync_service import sync_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sync"])


@router.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status():
    """
    Current sync state.

    States: IDLE, RUNNING, COMPLETED, PARTIAL (thumbnails outstanding or
    some folders failed) and FAILED, with the dominant thumbnail error.
    """
    return sync_service.get_status()


@router.get("/sync/diagnostics", response_model=SyncDiagnosticsResponse)
async def sync_diagnostics():
    """Latest state of every named work item plus per-folder checkpoints."""
    return sync_service.get_diagnostics()


@router.post("/sync", response_model=SyncActionResponse)
async def start_sync(request: SyncRequest):
    """
    Start a sync.

    Modes:
    - full: restart indexing even if a run is in progress
    - now: index unless a run is already queued
    - combined: index, detect local changes and upload
    """
    try:
        return sync_service.sync(mode=request.mode)
    except EnvironmentError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Sync error: %s", e)
        raise HTTPException(status_code=500, detail=f"Sync failed: {e}")


@router.post("/sync/now", response_model=SyncActionResponse)
async def sync_now():
    """Index now, keeping any run that is already queued."""
    try:
        return sync_service.sync(mode="now")
    except EnvironmentError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error("Sync error: %s", e)
        raise HTTPException(status_code=500, detail=f"Sync failed: {e}")


@router.post("/sync/retry", response_model=SyncActionResponse)
async def retry_sync():
    """
    Retry after a partial or failed sync.

    Exhausted thumbnail failures are requeued once; otherwise a full sync starts.
    """
    try:
        return sync_service.retry()
    except EnvironmentError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error("Retry error: %s", e)
        raise HTTPException(status_code=500, detail=f"Retry failed: {e}")


@router.post("/sync/cancel", response_model=CancelResponse)
async def cancel_sync():
    """Cancel all scheduled and running work."""
    return CancelResponse(cancelled=sync_service.cancel())
