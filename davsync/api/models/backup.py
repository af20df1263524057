"""
Backup-related API models: upload queue status and backup policy.
"""

from typing import Optional

from pydantic import BaseModel

from davsync.models import (
    DeletePolicy,
    ScheduleType,
    SourceScope,
    SyncMode,
    UploadStructure,
)


class BackupStatusResponse(BaseModel):
    """Backup state with the summary of the last reportable run."""
    state: str
    pending_count: int = 0
    failed_count: int = 0
    last_run_finished_at: Optional[int] = None
    last_run_uploaded_count: int = 0
    last_run_skipped_count: int = 0
    last_run_deleted_count: int = 0
    last_run_failed_count: int = 0
    last_run_error: Optional[str] = None


class BackupPolicyModel(BaseModel):
    """Full backup policy."""
    enabled: bool
    backup_root: str
    backup_root_selected: bool
    sync_mode: SyncMode
    schedule_type: ScheduleType
    schedule_interval_hours: int
    daily_hour: int
    daily_minute: int
    upload_photos: bool
    upload_videos: bool
    auto_upload_new_media: bool
    delete_policy: DeletePolicy
    source_scope: SourceScope
    local_folders: list[str] = []
    upload_structure: UploadStructure


class BackupPolicyUpdate(BaseModel):
    """Partial backup policy update. Omitted fields keep their value."""
    enabled: Optional[bool] = None
    backup_root: Optional[str] = None
    sync_mode: Optional[SyncMode] = None
    schedule_type: Optional[ScheduleType] = None
    schedule_interval_hours: Optional[int] = None
    daily_hour: Optional[int] = None
    daily_minute: Optional[int] = None
    upload_photos: Optional[bool] = None
    upload_videos: Optional[bool] = None
    auto_upload_new_media: Optional[bool] = None
    delete_policy: Optional[DeletePolicy] = None
    source_scope: Optional[SourceScope] = None
    local_folders: Optional[list[str]] = None
    upload_structure: Optional[UploadStructure] = None


class BackupRunResponse(BaseModel):
    """Response for a manual backup run."""
    status: str
    work_id: Optional[int] = None


class RetryFailedResponse(BaseModel):
    """Number of failed queue entries given a new retry budget."""
    requeued: int
