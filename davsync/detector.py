"""
Local change detector for davsync.
Scans the local library and turns new or deleted media into upload queue entries.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from davsync.config import config
from davsync.db import Database
from davsync.local_media import LocalMediaSource, LocalSourceUnavailable
from davsync.models import (
    BackupPolicy,
    DeletePolicy,
    SourceScope,
    SyncMode,
    UploadOperation,
    UploadQueueEntry,
    now_ms,
)
from davsync.paths import parent_remote_folder, remote_file_name, resolve_target_remote_folder
from davsync.policy import BackupPolicyRepository

logger = logging.getLogger(__name__)

DAY_MS = 24 * 3600 * 1000


@dataclass
class DetectResult:
    scanned_count: int = 0
    inserted_count: int = 0
    delete_count: int = 0
    pruned_count: int = 0
    reason: Optional[str] = None
    kick_upload: bool = False

    def to_output(self) -> dict:
        return {
            "scanned_count": self.scanned_count,
            "inserted_count": self.inserted_count,
            "delete_count": self.delete_count,
            "pruned_count": self.pruned_count,
            "reason": self.reason,
        }


def policy_block_reason(policy: BackupPolicy, manual: bool) -> Optional[str]:
    """Why an upload-side run should not proceed, or None."""
    if not policy.enabled:
        return "backup_disabled"
    if not policy.backup_root_selected:
        return "backup_root_not_selected"
    if policy.sync_mode == SyncMode.MANUAL_ONLY and not manual:
        return "manual_mode"
    return None


def _is_under_any(path: Optional[str], roots: Iterable[Path]) -> bool:
    if not path:
        return False
    candidate = Path(path)
    for root in roots:
        try:
            candidate.relative_to(root)
            return True
        except ValueError:
            continue
    return False


class LocalChangeDetector:
    """Enqueues uploads for new local media and deletes for removed media."""

    def __init__(
        self,
        database: Database,
        local_source: LocalMediaSource,
        policy_repository: BackupPolicyRepository,
        library_roots: Optional[Iterable[Path]] = None,
        retention_days: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = database
        self.local_source = local_source
        self.policies = policy_repository
        self.library_roots = [Path(root) for root in (
            config.LOCAL_LIBRARY_ROOTS if library_roots is None else library_roots
        )]
        self.retention_days = retention_days or config.UPLOAD_DONE_RETENTION_DAYS
        self.clock = clock

    def _roots_for(self, policy: BackupPolicy) -> list[Path]:
        if policy.source_scope == SourceScope.SELECTED_FOLDERS:
            return [Path(folder).expanduser() for folder in policy.local_folders]
        return list(self.library_roots)

    def detect_and_queue(self, manual: bool = False) -> DetectResult:
        """One detection pass. Blocking; run it off the event loop."""
        policy = self.policies.load()
        reason = policy_block_reason(policy, manual)
        if reason is None and not policy.auto_upload_new_media and not manual:
            reason = "auto_upload_disabled"
        roots = self._roots_for(policy)
        if reason is None and not roots:
            reason = (
                "no_selected_local_folders"
                if policy.source_scope == SourceScope.SELECTED_FOLDERS
                else "no_library_roots"
            )
        if reason is None and not policy.media_kinds:
            reason = "no_media_types"
        if reason is not None:
            logger.info(f"Local change detection skipped: {reason}")
            return DetectResult(reason=reason)

        try:
            items = self.local_source.scan(roots, policy.media_kinds)
        except LocalSourceUnavailable as e:
            logger.warning(f"Local change detection skipped: {e}")
            return DetectResult(reason="local_source_unavailable")

        now = self.clock()
        result = DetectResult(scanned_count=len(items))
        active = {record.stable_key: record for record in self.db.get_active_registry_entries()}

        seen: dict[str, str] = {}
        for item in items:
            seen[item.stable_key] = item.local_uri
            if item.stable_key in active:
                continue
            entry = UploadQueueEntry(
                stable_key=item.stable_key,
                operation=UploadOperation.UPLOAD,
                local_uri=item.local_uri,
                mime_type=item.mime_type,
                size=item.size,
                capture_timestamp=item.capture_timestamp,
                target_remote_folder=resolve_target_remote_folder(
                    policy.backup_root, policy.upload_structure, item.capture_timestamp
                ),
                target_file_name=item.file_name,
                created_at=now,
            )
            if self.db.enqueue_upload_if_absent(entry):
                result.inserted_count += 1

        self.db.mark_registry_seen({k: v for k, v in seen.items() if k in active}, now)

        if policy.delete_policy == DeletePolicy.MIRROR_DELETE:
            for record in active.values():
                if record.stable_key in seen or not _is_under_any(record.last_known_local_uri, roots):
                    continue
                # A touched file gets a new stable key for the same remote path
                if self.db.remote_path_claimed(record.remote_path, record.stable_key):
                    logger.debug(f"Not deleting {record.remote_path}: claimed by another local item")
                    continue
                entry = UploadQueueEntry(
                    stable_key=record.stable_key,
                    operation=UploadOperation.DELETE,
                    local_uri=record.last_known_local_uri,
                    size=record.size,
                    capture_timestamp=record.capture_timestamp,
                    target_remote_folder=parent_remote_folder(record.remote_path),
                    target_file_name=remote_file_name(record.remote_path),
                    resolved_remote_path=record.remote_path,
                    created_at=now,
                )
                if self.db.enqueue_upload_if_absent(entry):
                    result.delete_count += 1

        result.pruned_count = self.db.prune_done_uploads(now - self.retention_days * DAY_MS)
        result.kick_upload = manual or result.inserted_count > 0 or result.delete_count > 0
        logger.info(
            f"Local change detection: {result.scanned_count} scanned, "
            f"{result.inserted_count} upload(s) and {result.delete_count} delete(s) queued"
        )
        return result
