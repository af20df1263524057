"""
Sync orchestrator for davsync.
Derives user-facing sync and backup state from scheduler history and
catalog counts, and owns the scheduling decisions behind user actions.
"""

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from davsync.config import config
from davsync.db import Database
from davsync.jobs import (
    ALL_WORK_NAMES,
    BACKUP_SCHEDULED_KICK,
    LIBRARY_SYNC,
    LIBRARY_SYNC_AUTO_KICK,
    LOCAL_MEDIA_DETECTOR,
    LOCAL_MEDIA_DETECTOR_PERIODIC,
    MEDIA_UPLOAD,
    THUMBNAIL_FETCH,
    SyncJobs,
)
from davsync.models import (
    BackupPolicy,
    BackupRunState,
    BackupSyncState,
    ScheduleType,
    SelectedFolder,
    SyncMode,
    SyncState,
    UploadStatus,
    now_ms,
)
from davsync.paths import is_under_folder, normalize_remote_path
from davsync.policy import BackupPolicyRepository
from davsync.scheduler import ExistingWorkPolicy, JobScheduler, WorkInfo, WorkState
from davsync.thumbnail_cache import ThumbnailCache
from davsync.thumbnails import ThumbnailAcquirer

logger = logging.getLogger(__name__)

_ACTIVE = (WorkState.ENQUEUED, WorkState.RUNNING)


def map_sync_state(
    library_info: Optional[WorkInfo],
    thumbnail_info: Optional[WorkInfo],
    pending: int,
    exhausted: int,
) -> SyncState:
    """
    Collapse indexer and thumbnail work state into one user-facing state.

    Thumbnail activity alone never reports RUNNING, and a failed index wins
    over thumbnail progress.
    """
    if library_info is not None and library_info.state in _ACTIVE:
        return SyncState.RUNNING
    if library_info is not None and library_info.state == WorkState.FAILED:
        return SyncState.FAILED
    if thumbnail_info is not None and thumbnail_info.state in _ACTIVE:
        return SyncState.PARTIAL
    if pending > 0:
        return SyncState.PARTIAL
    if library_info is None:
        return SyncState.PARTIAL if exhausted > 0 else SyncState.IDLE
    if library_info.state == WorkState.SUCCEEDED:
        if exhausted > 0 or library_info.output.get("status") == "PARTIAL":
            return SyncState.PARTIAL
        return SyncState.COMPLETED
    return SyncState.IDLE


def map_backup_state(
    latest_upload_info: Optional[WorkInfo],
    latest_reportable_info: Optional[WorkInfo],
    pending: int,
    failed: int,
) -> BackupSyncState:
    """Backup state plus the summary of the last run that did real work."""
    if latest_upload_info is not None and latest_upload_info.state in _ACTIVE:
        state = BackupRunState.RUNNING
    elif latest_upload_info is not None and latest_upload_info.state == WorkState.FAILED:
        state = BackupRunState.FAILED
    elif failed > 0:
        state = BackupRunState.FAILED
    elif pending > 0:
        state = BackupRunState.RUNNING
    elif latest_upload_info is not None and latest_upload_info.state == WorkState.SUCCEEDED:
        state = BackupRunState.COMPLETED
    else:
        state = BackupRunState.IDLE

    backup = BackupSyncState(state=state, pending_count=pending, failed_count=failed)
    if latest_reportable_info is not None:
        output = latest_reportable_info.output
        backup.last_run_finished_at = output.get("finished_at") or latest_reportable_info.finished_at
        backup.last_run_uploaded_count = output.get("uploaded_count", 0)
        backup.last_run_skipped_count = output.get("skipped_count", 0)
        backup.last_run_deleted_count = output.get("deleted_count", 0)
        backup.last_run_failed_count = output.get("failed_count", 0)
        backup.last_run_error = output.get("error")
    return backup


def seconds_until_daily(hour: int, minute: int, now: Optional[datetime] = None) -> float:
    """Seconds from now to the next local hour:minute."""
    now = now or datetime.now()
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


@dataclass
class SyncStatus:
    state: SyncState
    library_state: Optional[str] = None
    thumbnail_state: Optional[str] = None
    pending_thumbnails: int = 0
    exhausted_thumbnails: int = 0
    dominant_error: Optional[str] = None
    dominant_error_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


StatusListener = Callable[[SyncStatus], None]


class SyncOrchestrator:
    """Single entry point for user-triggered sync and backup actions."""

    def __init__(
        self,
        database: Database,
        scheduler: JobScheduler,
        jobs: SyncJobs,
        policy_repository: BackupPolicyRepository,
        thumbnail_cache: ThumbnailCache,
        max_thumbnail_retries: Optional[int] = None,
    ):
        self.db = database
        self.scheduler = scheduler
        self.jobs = jobs
        self.policies = policy_repository
        self.cache = thumbnail_cache
        self.max_thumbnail_retries = max_thumbnail_retries or config.THUMBNAIL_MAX_RETRIES

        self._lock = threading.Lock()
        self._listeners: list[StatusListener] = []
        self._last_pushed: Optional[SyncStatus] = None
        self._dominant_cache: Optional[tuple[int, Optional[tuple[str, int]]]] = None
        self._exhausted_requeue_in_flight = False
        self._reconciled = False

        self.scheduler.add_listener(self._on_work_changed)

    # State

    def _dominant_error(self, exhausted: int) -> Optional[tuple[str, int]]:
        with self._lock:
            if self._dominant_cache is not None and self._dominant_cache[0] == exhausted:
                return self._dominant_cache[1]
        dominant = self.db.get_dominant_exhausted_error(self.max_thumbnail_retries) if exhausted else None
        with self._lock:
            self._dominant_cache = (exhausted, dominant)
        return dominant

    def sync_status(self) -> SyncStatus:
        library = self.scheduler.latest_info(LIBRARY_SYNC)
        thumbnails = self.scheduler.latest_info(THUMBNAIL_FETCH)
        pending = self.db.count_pending_thumbnails(self.max_thumbnail_retries)
        exhausted = self.db.count_exhausted_thumbnails(self.max_thumbnail_retries)
        dominant = self._dominant_error(exhausted)
        return SyncStatus(
            state=map_sync_state(library, thumbnails, pending, exhausted),
            library_state=library.state.value if library else None,
            thumbnail_state=thumbnails.state.value if thumbnails else None,
            pending_thumbnails=pending,
            exhausted_thumbnails=exhausted,
            dominant_error=dominant[0] if dominant else None,
            dominant_error_count=dominant[1] if dominant else 0,
            last_error=library.output.get("error") if library else None,
        )

    def backup_status(self) -> BackupSyncState:
        history = self.scheduler.work_infos(MEDIA_UPLOAD)
        latest = history[-1] if history else None
        reportable = None
        for info in reversed(history):
            if info.state.is_finished and info.output.get("reportable_run"):
                reportable = info
                break
        return map_backup_state(
            latest,
            reportable,
            self.db.count_uploads_by_status(UploadStatus.PENDING)
            + self.db.count_uploads_by_status(UploadStatus.UPLOADING),
            self.db.count_uploads_by_status(UploadStatus.FAILED),
        )

    def debug_line(self) -> str:
        status = self.sync_status()
        return (
            f"sync={status.state.value} library={status.library_state} "
            f"thumbnails={status.thumbnail_state} pending={status.pending_thumbnails} "
            f"exhausted={status.exhausted_thumbnails} dominant={status.dominant_error}"
            f"x{status.dominant_error_count} requeue_in_flight={self._exhausted_requeue_in_flight}"
        )

    # Listeners

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def _on_work_changed(self, info: WorkInfo) -> None:
        if info.name == THUMBNAIL_FETCH and info.state.is_finished:
            self._exhausted_requeue_in_flight = False
        if info.name not in (LIBRARY_SYNC, THUMBNAIL_FETCH) or not self._listeners:
            return
        status = self.sync_status()
        if status == self._last_pushed:
            return
        self._last_pushed = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}")

    # Sync actions

    def schedule_full(self) -> WorkInfo:
        """Restart indexing from scratch and make sure thumbnails follow."""
        info = self.jobs.enqueue_library_sync(ExistingWorkPolicy.REPLACE)
        self.jobs.enqueue_thumbnail_backfill(ExistingWorkPolicy.KEEP)
        return info

    def request_sync_now(self) -> WorkInfo:
        info = self.jobs.enqueue_library_sync(ExistingWorkPolicy.KEEP)
        self.jobs.enqueue_thumbnail_backfill(ExistingWorkPolicy.KEEP)
        return info

    def request_combined_sync_now(self) -> WorkInfo:
        """Index, detect local changes and upload, all as a manual run."""
        info = self.request_sync_now()
        self.jobs.enqueue_detector(manual=True, policy=ExistingWorkPolicy.REPLACE)
        self.jobs.enqueue_upload(manual=True, policy=ExistingWorkPolicy.KEEP)
        return info

    def retry(self) -> Optional[WorkInfo]:
        status = self.sync_status()
        if status.state == SyncState.PARTIAL and status.exhausted_thumbnails > 0:
            if self._exhausted_requeue_in_flight:
                logger.info("Exhausted thumbnail requeue already in flight")
                return self.scheduler.latest_info(THUMBNAIL_FETCH)
            requeued = self.db.requeue_exhausted_thumbnails(self.max_thumbnail_retries)
            self._exhausted_requeue_in_flight = True
            logger.info(f"Requeued {requeued} exhausted thumbnail(s)")
            return self.jobs.enqueue_thumbnail_backfill(ExistingWorkPolicy.KEEP)
        return self.schedule_full()

    def cancel_all(self) -> list[str]:
        """Cancel every unique and periodic work item."""
        cancelled = []
        for name in ALL_WORK_NAMES:
            if self.scheduler.cancel(name):
                cancelled.append(name)
            if self.scheduler.cancel_periodic(name) and name not in cancelled:
                cancelled.append(name)
        logger.info(f"Cancelled work: {cancelled or 'none'}")
        return cancelled

    def schedule_thumbnail_backfill_if_needed(self, requeue_exhausted: bool = False) -> Optional[WorkInfo]:
        if requeue_exhausted:
            self.db.requeue_exhausted_thumbnails(self.max_thumbnail_retries)
        if self.db.count_pending_thumbnails(self.max_thumbnail_retries) == 0:
            return None
        return self.jobs.enqueue_thumbnail_backfill(ExistingWorkPolicy.KEEP)

    def ensure_auto_sync_scheduled(self) -> bool:
        return self.scheduler.schedule_periodic(
            LIBRARY_SYNC_AUTO_KICK,
            config.AUTO_SYNC_INTERVAL_MINUTES * 60,
            self.jobs.auto_sync_kick,
            ExistingWorkPolicy.KEEP,
        )

    def reconcile_thumbnail_cache(self) -> int:
        """Heal READY rows with missing or oversized files. Runs once per process."""
        if self._reconciled:
            return 0
        self._reconciled = True
        acquirer = ThumbnailAcquirer(self.db, None, self.cache)
        healed = acquirer.reconcile_ready_thumbnails(max_bytes=config.THUMBNAIL_MAX_BYTES)
        if healed:
            self.jobs.enqueue_thumbnail_backfill(ExistingWorkPolicy.KEEP)
        return healed

    # Folder selection

    def select_folder(self, remote_path: str, display_name: Optional[str] = None) -> SelectedFolder:
        folder = self.db.add_selected_folder(remote_path, display_name)
        self.schedule_full()
        return folder

    def deselect_folder(self, remote_path: str) -> int:
        """Drop a folder and its catalog rows unless another selection still covers them."""
        normalized = normalize_remote_path(remote_path)
        if not self.db.remove_selected_folder(normalized):
            raise KeyError(normalized)
        remaining = [folder.remote_path for folder in self.db.get_selected_folders()]
        if any(is_under_folder(normalized, other) for other in remaining):
            return 0
        doomed = [
            item.remote_path for item in self.db.get_media_under_folder(normalized)
            if not any(is_under_folder(item.remote_path, other) for other in remaining)
        ]
        deleted = self.db.delete_media_items(doomed)
        self.cache.delete_files(item.thumbnail_path for item in deleted)
        logger.info(f"Deselected {normalized}, removed {len(deleted)} catalog item(s)")
        return len(deleted)

    # Backup actions

    def retry_failed_uploads(self) -> int:
        requeued = self.db.requeue_failed_uploads(now_ms())
        logger.info(f"Requeued {requeued} failed upload(s)")
        if requeued:
            self.jobs.enqueue_upload(manual=True, policy=ExistingWorkPolicy.KEEP)
        return requeued

    def run_backup_now(self) -> WorkInfo:
        self.jobs.enqueue_detector(manual=True, policy=ExistingWorkPolicy.REPLACE)
        return self.jobs.enqueue_upload(manual=True, policy=ExistingWorkPolicy.KEEP)

    def kick_detector(self) -> None:
        """Called from the filesystem watcher thread."""
        self.scheduler.enqueue_unique_threadsafe(
            LOCAL_MEDIA_DETECTOR,
            self.jobs.local_media_detect,
            ExistingWorkPolicy.KEEP,
            input={"manual": False},
        )

    def apply_backup_scheduling(self, policy: Optional[BackupPolicy] = None) -> None:
        """Bring periodic backup work in line with the policy."""
        policy = policy or self.policies.load()
        if not policy.enabled or not policy.backup_root_selected:
            self.scheduler.cancel_periodic(BACKUP_SCHEDULED_KICK)
            self.scheduler.cancel_periodic(LOCAL_MEDIA_DETECTOR_PERIODIC)
            logger.info("Backup scheduling cleared: backup inactive")
            return

        if policy.sync_mode == SyncMode.MANUAL_ONLY:
            self.scheduler.cancel_periodic(BACKUP_SCHEDULED_KICK)
        elif policy.schedule_type == ScheduleType.DAILY_TIME:
            self.scheduler.schedule_periodic(
                BACKUP_SCHEDULED_KICK,
                24 * 3600,
                self.jobs.backup_scheduled_kick,
                ExistingWorkPolicy.REPLACE,
                initial_delay=seconds_until_daily(policy.daily_hour, policy.daily_minute),
            )
        else:
            self.scheduler.schedule_periodic(
                BACKUP_SCHEDULED_KICK,
                policy.schedule_interval_hours * 3600,
                self.jobs.backup_scheduled_kick,
                ExistingWorkPolicy.REPLACE,
            )

        if policy.auto_upload_new_media and policy.sync_mode != SyncMode.MANUAL_ONLY:
            self.scheduler.schedule_periodic(
                LOCAL_MEDIA_DETECTOR_PERIODIC,
                config.DETECTOR_INTERVAL_HOURS * 3600,
                self.jobs.backup_scheduled_kick,
                ExistingWorkPolicy.KEEP,
            )
        else:
            self.scheduler.cancel_periodic(LOCAL_MEDIA_DETECTOR_PERIODIC)
