"""
Sync-related API models: remote library indexing and thumbnail backfill.
"""

from typing import Any, Optional

from pydantic import BaseModel


class WorkInfoModel(BaseModel):
    """One scheduled work item as tracked by the job scheduler."""
    id: int
    name: str
    state: str
    run_attempt: int = 0
    output: dict[str, Any] = {}
    enqueued_at: int
    started_at: Optional[int] = None
    finished_at: Optional[int] = None


class SyncRequest(BaseModel):
    """Request for a sync run."""
    mode: str = "full"  # "full", "now" or "combined"


class SyncActionResponse(BaseModel):
    """Response for sync actions."""
    status: str
    work: Optional[WorkInfoModel] = None


class SyncStatusResponse(BaseModel):
    """User-facing sync state."""
    state: str
    library_state: Optional[str] = None
    thumbnail_state: Optional[str] = None
    pending_thumbnails: int = 0
    exhausted_thumbnails: int = 0
    dominant_error: Optional[str] = None
    dominant_error_count: int = 0
    last_error: Optional[str] = None


class SyncDiagnosticsResponse(BaseModel):
    """Scheduler and checkpoint details for troubleshooting."""
    debug_line: str
    work: dict[str, Optional[WorkInfoModel]]
    periodic: list[str]
    checkpoints: list[dict[str, Any]]


class CancelResponse(BaseModel):
    """Work names that were cancelled."""
    cancelled: list[str]
