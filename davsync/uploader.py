"""
Upload processor for davsync.
Drains the durable upload queue: idempotent uploads guarded by a HEAD check,
remote deletes, and bounded retry with a fixed backoff schedule.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from davsync.config import config
from davsync.db import Database
from davsync.detector import DAY_MS, policy_block_reason
from davsync.errors import CONFLICT_SIZE_MISMATCH, ErrorCategory
from davsync.models import (
    UploadedMediaRecord,
    UploadOperation,
    UploadQueueEntry,
    UploadStatus,
    now_ms,
)
from davsync.paths import build_remote_file_path, compute_retry_delay_seconds, normalize_remote_path
from davsync.policy import BackupPolicyRepository
from davsync.webdav import WebDavClient

logger = logging.getLogger(__name__)

ENSURE_FOLDER_FAILED = "ensure_folder_failed"
HEAD_FAILED = "head_failed"
UPLOAD_FAILED = "upload_failed"
DELETE_FAILED = "delete_failed"
MISSING_LOCAL_URI = "missing_local_uri"
LOCAL_FILE_MISSING = "local_file_missing"


class UploadOutcomeKind(str, Enum):
    UPLOADED = "UPLOADED"
    SKIPPED_EXISTING = "SKIPPED_EXISTING"
    DELETED = "DELETED"
    SUPERSEDED = "SUPERSEDED"
    FAILURE = "FAILURE"


@dataclass
class UploadOutcome:
    kind: UploadOutcomeKind
    remote_path: Optional[str] = None
    error_code: Optional[str] = None
    transient: bool = False
    detail: Optional[str] = None

    @classmethod
    def failure(cls, code: str, transient: bool, detail: Optional[str] = None) -> "UploadOutcome":
        return cls(UploadOutcomeKind.FAILURE, error_code=code, transient=transient, detail=detail)


@dataclass
class UploadRunResult:
    processed_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    uploaded_count: int = 0
    skipped_count: int = 0
    deleted_count: int = 0
    retry_scheduled_count: int = 0
    recovered_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[int] = None
    reason: Optional[str] = None
    reportable: bool = True
    stopped: bool = False

    @property
    def changed_remote_data(self) -> bool:
        return self.uploaded_count > 0 or self.deleted_count > 0

    def to_output(self, finished_at: int) -> dict:
        return {
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "uploaded_count": self.uploaded_count,
            "skipped_count": self.skipped_count,
            "deleted_count": self.deleted_count,
            "retry_scheduled_count": self.retry_scheduled_count,
            "error": self.last_error,
            "reason": self.reason,
            "reportable_run": self.reportable,
            "finished_at": finished_at,
        }


class UploadProcessor:
    """Processes ready upload queue entries in batches."""

    def __init__(
        self,
        database: Database,
        client: WebDavClient,
        policy_repository: BackupPolicyRepository,
        batch_limit: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retention_days: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = database
        self.client = client
        self.policies = policy_repository
        self.batch_limit = batch_limit or config.UPLOAD_BATCH_LIMIT
        self.max_attempts = max_attempts or config.UPLOAD_MAX_RETRY_ATTEMPTS
        self.retention_days = retention_days or config.UPLOAD_DONE_RETENTION_DAYS
        self.clock = clock

    async def drain(self, manual: bool = False, is_stopped: Optional[Callable[[], bool]] = None) -> UploadRunResult:
        """Process every ready entry until the queue has nothing ready or the run is stopped."""
        stopped = is_stopped or (lambda: False)
        reason = policy_block_reason(self.policies.load(), manual)
        if reason is not None:
            logger.info(f"Upload run skipped: {reason}")
            return UploadRunResult(reason=reason, reportable=False)

        result = UploadRunResult()
        result.recovered_count = self.db.requeue_interrupted_uploads(self.clock())
        if result.recovered_count:
            logger.info(f"Requeued {result.recovered_count} interrupted upload(s)")

        attempted: set[int] = set()
        while not stopped():
            batch = [
                entry for entry in self.db.get_ready_uploads(self.clock(), self.batch_limit)
                if entry.id not in attempted
            ]
            if not batch:
                break
            for entry in batch:
                if stopped():
                    break
                attempted.add(entry.id)
                self.db.mark_upload_uploading(entry.id, self.clock())
                outcome = await self.process_entry(entry)
                if stopped():
                    # Left UPLOADING; the next run requeues it and the HEAD check settles it
                    logger.info(f"Upload run stopped, outcome of entry {entry.id} not recorded")
                    break
                self._record(entry, outcome, result)

        result.stopped = stopped()
        if result.processed_count == 0 and result.recovered_count == 0:
            result.reason = "empty_queue"

        now = self.clock()
        self.db.prune_done_uploads(now - self.retention_days * DAY_MS)
        result.next_retry_at = self.db.get_earliest_pending_attempt(now)
        logger.info(
            f"Upload run: {result.uploaded_count} uploaded, {result.skipped_count} skipped, "
            f"{result.deleted_count} deleted, {result.failed_count} failed"
        )
        return result

    async def process_entry(self, entry: UploadQueueEntry) -> UploadOutcome:
        if entry.operation == UploadOperation.DELETE:
            return await self._delete(entry)
        return await self._upload(entry)

    async def _upload(self, entry: UploadQueueEntry) -> UploadOutcome:
        if not entry.local_uri:
            return UploadOutcome.failure(MISSING_LOCAL_URI, transient=False)
        local_path = Path(entry.local_uri)
        if not local_path.is_file():
            return UploadOutcome.failure(LOCAL_FILE_MISSING, transient=False, detail=str(local_path))

        folder = normalize_remote_path(entry.target_remote_folder)
        remote_path = entry.resolved_remote_path or build_remote_file_path(folder, entry.target_file_name)

        ensured = await self.client.ensure_folder_path(folder)
        if not ensured.ok:
            return UploadOutcome.failure(ENSURE_FOLDER_FAILED, ensured.error.is_transient, ensured.error.code)

        existing = await self.client.head_file(remote_path)
        if not existing.ok:
            return UploadOutcome.failure(HEAD_FAILED, existing.error.is_transient, existing.error.code)
        if existing.data is not None:
            if existing.data.size == entry.size:
                return UploadOutcome(UploadOutcomeKind.SKIPPED_EXISTING, remote_path=remote_path)
            logger.warning(
                f"Size conflict at {remote_path}: remote {existing.data.size} bytes, local {entry.size} bytes"
            )
            return UploadOutcome.failure(CONFLICT_SIZE_MISMATCH, transient=False)

        put = await self.client.put_file(remote_path, local_path, entry.mime_type)
        if not put.ok:
            return UploadOutcome.failure(UPLOAD_FAILED, put.error.is_transient, put.error.code)
        return UploadOutcome(UploadOutcomeKind.UPLOADED, remote_path=remote_path)

    async def _delete(self, entry: UploadQueueEntry) -> UploadOutcome:
        remote_path = entry.resolved_remote_path or build_remote_file_path(
            entry.target_remote_folder, entry.target_file_name
        )
        if self.db.remote_path_claimed(remote_path, entry.stable_key):
            logger.info(f"Keeping {remote_path}: it now backs up another local item")
            return UploadOutcome(UploadOutcomeKind.SUPERSEDED, remote_path=remote_path)
        deleted = await self.client.delete_file(remote_path)
        if deleted.ok or deleted.error.category == ErrorCategory.NOT_FOUND:
            return UploadOutcome(UploadOutcomeKind.DELETED, remote_path=remote_path)
        return UploadOutcome.failure(DELETE_FAILED, deleted.error.is_transient, deleted.error.code)

    def _record(self, entry: UploadQueueEntry, outcome: UploadOutcome, result: UploadRunResult) -> None:
        now = self.clock()
        result.processed_count += 1

        if outcome.kind == UploadOutcomeKind.FAILURE:
            attempt = entry.retry_count + 1
            error = outcome.error_code if not outcome.detail else f"{outcome.error_code}:{outcome.detail}"
            result.last_error = outcome.error_code
            if outcome.transient and attempt < self.max_attempts:
                next_at = now + compute_retry_delay_seconds(attempt) * 1000
                self.db.mark_upload_retry(entry.id, attempt, next_at, error, now)
                result.retry_scheduled_count += 1
                logger.info(f"Upload {entry.id} failed ({error}), retry {attempt} scheduled")
            else:
                self.db.mark_upload_failed(entry.id, attempt, error, now)
                result.failed_count += 1
                logger.warning(f"Upload {entry.id} failed permanently ({error})")
            return

        self.db.mark_upload_done(entry.id, outcome.remote_path, now)
        result.success_count += 1
        if outcome.kind == UploadOutcomeKind.SUPERSEDED:
            result.skipped_count += 1
            self.db.delete_registry_entry(entry.stable_key)
            return
        if outcome.kind == UploadOutcomeKind.DELETED:
            result.deleted_count += 1
            self.db.mark_registry_deleted(entry.stable_key, now)
            return

        if outcome.kind == UploadOutcomeKind.UPLOADED:
            result.uploaded_count += 1
        else:
            result.skipped_count += 1
        self.db.upsert_registry_entry(UploadedMediaRecord(
            stable_key=entry.stable_key,
            remote_path=outcome.remote_path,
            last_known_local_uri=entry.local_uri,
            size=entry.size,
            capture_timestamp=entry.capture_timestamp,
            uploaded_at=now,
            last_seen_at=now,
        ))
