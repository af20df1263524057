"""
Domain types for davsync.
Catalog entities, upload queue entities, backup policy and sync state values.
"""

import time
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


IMAGE_EXTENSIONS = frozenset({
    "jpg", "jpeg", "png", "gif", "bmp", "webp", "heic", "heif", "avif",
    "tif", "tiff", "dng", "raw", "arw", "cr2", "cr3", "nef", "orf", "rw2",
})
VIDEO_EXTENSIONS = frozenset({"mp4", "m4v", "mov", "webm", "3gp", "mkv", "avi"})


class MediaKind(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_mime_or_name(cls, mime_type: Optional[str], file_name: str = "") -> "MediaKind":
        """Classify by MIME prefix, falling back to the file extension."""
        mime = (mime_type or "").lower()
        if mime.startswith("image/"):
            return cls.IMAGE
        if mime.startswith("video/"):
            return cls.VIDEO
        ext = PurePosixPath(file_name).suffix.lower().lstrip(".")
        if ext in IMAGE_EXTENSIONS:
            return cls.IMAGE
        if ext in VIDEO_EXTENSIONS:
            return cls.VIDEO
        return cls.UNKNOWN


class ThumbnailStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class CheckpointStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UploadOperation(str, Enum):
    UPLOAD = "UPLOAD"
    DELETE = "DELETE"


class UploadStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    DONE = "DONE"
    FAILED = "FAILED"


class SyncState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class BackupRunState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class MediaItem:
    """A catalogued remote media file."""
    remote_path: str
    file_name: str
    mime_type: str
    size: int
    last_modified: int
    etag: str
    folder_path: str
    capture_timestamp: Optional[int] = None
    file_id: Optional[str] = None
    thumbnail_path: Optional[str] = None
    thumbnail_status: ThumbnailStatus = ThumbnailStatus.PENDING
    thumbnail_retry_count: int = 0
    thumbnail_last_error: Optional[str] = None

    @property
    def timeline_sort_key(self) -> int:
        if self.capture_timestamp and self.capture_timestamp > 0:
            return self.capture_timestamp
        return self.last_modified

    @property
    def kind(self) -> MediaKind:
        return MediaKind.from_mime_or_name(self.mime_type, self.file_name)

    def same_remote_metadata(self, other: "MediaItem") -> bool:
        return (
            self.etag == other.etag
            and self.size == other.size
            and self.last_modified == other.last_modified
            and self.capture_timestamp == other.capture_timestamp
            and self.file_id == other.file_id
        )

    @classmethod
    def from_row(cls, row: dict) -> "MediaItem":
        return cls(
            remote_path=row["remote_path"],
            file_name=row["file_name"],
            mime_type=row["mime_type"],
            size=row["size"],
            last_modified=row["last_modified"],
            etag=row["etag"],
            folder_path=row["folder_path"],
            capture_timestamp=row["capture_timestamp"],
            file_id=row["file_id"],
            thumbnail_path=row["thumbnail_path"],
            thumbnail_status=ThumbnailStatus(row["thumbnail_status"]),
            thumbnail_retry_count=row["thumbnail_retry_count"],
            thumbnail_last_error=row["thumbnail_last_error"],
        )


@dataclass
class ThumbnailUpdate:
    """Thumbnail fields written for one catalog row."""
    remote_path: str
    status: ThumbnailStatus
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None
    increment_retry: bool = False
    # Version the thumbnail was fetched for; None writes unconditionally
    etag: Optional[str] = None
    size: Optional[int] = None


@dataclass
class SyncCheckpoint:
    folder_path: str
    last_sync_timestamp: int
    status: CheckpointStatus
    last_etag: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None


@dataclass
class SelectedFolder:
    remote_path: str
    display_name: str
    added_timestamp: int


@dataclass
class RemoteFile:
    """One entry of a PROPFIND listing."""
    remote_path: str
    name: str
    is_directory: bool
    content_type: str = ""
    size: int = 0
    last_modified: int = 0
    etag: str = ""
    file_id: Optional[str] = None
    capture_timestamp: Optional[int] = None


@dataclass
class UploadQueueEntry:
    stable_key: str
    operation: UploadOperation
    target_remote_folder: str
    target_file_name: str
    local_uri: Optional[str] = None
    mime_type: str = "application/octet-stream"
    size: int = 0
    capture_timestamp: int = 0
    status: UploadStatus = UploadStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: int = 0
    next_attempt_at: int = 0
    resolved_remote_path: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict) -> "UploadQueueEntry":
        return cls(
            id=row["id"],
            stable_key=row["stable_key"],
            operation=UploadOperation(row["operation"]),
            local_uri=row["local_uri"],
            mime_type=row["mime_type"],
            size=row["size"],
            capture_timestamp=row["capture_timestamp"],
            target_remote_folder=row["target_remote_folder"],
            target_file_name=row["target_file_name"],
            status=UploadStatus(row["status"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            next_attempt_at=row["next_attempt_at"],
            resolved_remote_path=row["resolved_remote_path"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class UploadedMediaRecord:
    stable_key: str
    remote_path: str
    size: int
    capture_timestamp: int
    uploaded_at: int
    last_seen_at: int
    last_known_local_uri: Optional[str] = None
    deleted_remotely_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict) -> "UploadedMediaRecord":
        return cls(**{f.name: row[f.name] for f in fields(cls)})


@dataclass
class LocalMediaItem:
    """A media file found in the local library."""
    stable_key: str
    local_uri: str
    file_name: str
    mime_type: str
    size: int
    capture_timestamp: int
    kind: MediaKind


# Backup policy

class SyncMode(str, Enum):
    MANUAL_ONLY = "MANUAL_ONLY"
    SCHEDULED = "SCHEDULED"
    WHEN_CHARGING = "WHEN_CHARGING"


class ScheduleType(str, Enum):
    INTERVAL_HOURS = "INTERVAL_HOURS"
    DAILY_TIME = "DAILY_TIME"


class DeletePolicy(str, Enum):
    APPEND_ONLY = "APPEND_ONLY"
    MIRROR_DELETE = "MIRROR_DELETE"


class SourceScope(str, Enum):
    FULL_LIBRARY = "FULL_LIBRARY"
    SELECTED_FOLDERS = "SELECTED_FOLDERS"


class UploadStructure(str, Enum):
    FLAT_FOLDER = "FLAT_FOLDER"
    YEAR_MONTH_FOLDERS = "YEAR_MONTH_FOLDERS"


DEFAULT_BACKUP_ROOT = "/Photos/davsync Backup"
MIN_SCHEDULE_INTERVAL_HOURS = 2
MAX_SCHEDULE_INTERVAL_HOURS = 24


@dataclass
class BackupPolicy:
    """User-chosen backup behavior."""
    enabled: bool = False
    backup_root: str = DEFAULT_BACKUP_ROOT
    backup_root_selected: bool = False
    sync_mode: SyncMode = SyncMode.SCHEDULED
    schedule_type: ScheduleType = ScheduleType.INTERVAL_HOURS
    schedule_interval_hours: int = 24
    daily_hour: int = 2
    daily_minute: int = 0
    upload_photos: bool = True
    upload_videos: bool = True
    auto_upload_new_media: bool = True
    delete_policy: DeletePolicy = DeletePolicy.APPEND_ONLY
    source_scope: SourceScope = SourceScope.FULL_LIBRARY
    local_folders: list = field(default_factory=list)
    upload_structure: UploadStructure = UploadStructure.YEAR_MONTH_FOLDERS

    def __post_init__(self):
        self.schedule_interval_hours = max(
            MIN_SCHEDULE_INTERVAL_HOURS,
            min(MAX_SCHEDULE_INTERVAL_HOURS, int(self.schedule_interval_hours)),
        )
        self.daily_hour = max(0, min(23, int(self.daily_hour)))
        self.daily_minute = max(0, min(59, int(self.daily_minute)))

    @property
    def media_kinds(self) -> set:
        kinds = set()
        if self.upload_photos:
            kinds.add(MediaKind.IMAGE)
        if self.upload_videos:
            kinds.add(MediaKind.VIDEO)
        return kinds


@dataclass
class AuthSession:
    server_url: str
    login_name: str
    app_password: str

    def __repr__(self) -> str:
        return (
            f"AuthSession(server_url={self.server_url!r}, "
            f"login_name={self.login_name!r}, app_password='***')"
        )


@dataclass
class BackupSyncState:
    """Backup status as shown to the user."""
    state: BackupRunState
    pending_count: int = 0
    failed_count: int = 0
    last_run_finished_at: Optional[int] = None
    last_run_uploaded_count: int = 0
    last_run_skipped_count: int = 0
    last_run_deleted_count: int = 0
    last_run_failed_count: int = 0
    last_run_error: Optional[str] = None
