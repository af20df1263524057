"""
Pydantic models (schemas) for API request/response types.

All models are re-exported here for convenience:
    from davsync.api.models import SyncStatusResponse, BackupPolicyModel, ...
"""

from davsync.api.models.system import (
    HealthResponse,
    StatsResponse,
    ErrorResponse,
)
from davsync.api.models.sync import (
    WorkInfoModel,
    SyncRequest,
    SyncActionResponse,
    SyncStatusResponse,
    SyncDiagnosticsResponse,
    CancelResponse,
)
from davsync.api.models.backup import (
    BackupStatusResponse,
    BackupPolicyModel,
    BackupPolicyUpdate,
    BackupRunResponse,
    RetryFailedResponse,
)
from davsync.api.models.folders import (
    FolderModel,
    FolderRequest,
    FoldersResponse,
    RemoteFolderModel,
    RemoteFoldersResponse,
)
from davsync.api.models.media import (
    MediaItemModel,
    MediaListResponse,
)

__all__ = [
    # System
    "HealthResponse",
    "StatsResponse",
    "ErrorResponse",
    # Sync
    "WorkInfoModel",
    "SyncRequest",
    "SyncActionResponse",
    "SyncStatusResponse",
    "SyncDiagnosticsResponse",
    "CancelResponse",
    # Backup
    "BackupStatusResponse",
    "BackupPolicyModel",
    "BackupPolicyUpdate",
    "BackupRunResponse",
    "RetryFailedResponse",
    # Folders
    "FolderModel",
    "FolderRequest",
    "FoldersResponse",
    "RemoteFolderModel",
    "RemoteFoldersResponse",
    # Media
    "MediaItemModel",
    "MediaListResponse",
]
