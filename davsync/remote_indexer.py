"""
Remote indexer module for davsync.
Scans selected remote folders, merges listings into the catalog and prunes
rows for files that disappeared from the server.
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from davsync.config import config
from davsync.db import Database
from davsync.errors import ErrorCategory, WebDavError
from davsync.models import (
    CheckpointStatus,
    MediaItem,
    RemoteFile,
    SyncCheckpoint,
    ThumbnailStatus,
    now_ms,
)
from davsync.paths import normalize_remote_path, parent_remote_folder
from davsync.thumbnail_cache import ThumbnailCache
from davsync.webdav import WebDavClient

logger = logging.getLogger(__name__)

LAST_PROBE_KEY = "last_head_probe_at"
LAST_INDEXED_KEY = "last_indexed"


class IndexStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    RETRY = "RETRY"
    FAILED = "FAILED"


@dataclass
class FolderScanOutcome:
    """Result of listing one selected folder."""
    folder: str
    files: Optional[list[RemoteFile]] = None
    error: Optional[WebDavError] = None
    recursive: bool = True
    purged: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class IndexResult:
    status: IndexStatus
    synced_count: int = 0
    changed_count: int = 0
    pruned_count: int = 0
    probed_count: int = 0
    failed_folders: list = field(default_factory=list)
    error_code: Optional[str] = None

    def to_output(self) -> dict:
        return {
            "status": self.status.value,
            "synced_count": self.synced_count,
            "changed_count": self.changed_count,
            "pruned_count": self.pruned_count,
            "probed_count": self.probed_count,
            "failed_folders": list(self.failed_folders),
            "error_code": self.error_code,
        }


def aggregate_error_code(errors: list[WebDavError]) -> Optional[str]:
    """The shared category name when failures agree, otherwise 'mixed'."""
    if not errors:
        return None
    categories = {error.category for error in errors}
    if len(categories) == 1:
        only = categories.pop()
        if only == ErrorCategory.TRANSIENT:
            codes = {error.code for error in errors}
            return codes.pop() if len(codes) == 1 else only.value
        return only.value
    return "mixed"


def aggregate_outcomes(outcomes: list[FolderScanOutcome]) -> tuple[IndexStatus, Optional[str]]:
    """Overall pass status from per-folder outcomes."""
    failures = [outcome.error for outcome in outcomes if not outcome.ok]
    if not failures:
        return IndexStatus.COMPLETED, None
    code = aggregate_error_code(failures)
    if len(failures) < len(outcomes):
        return IndexStatus.PARTIAL, code
    if all(error.is_transient for error in failures):
        return IndexStatus.RETRY, code
    return IndexStatus.FAILED, code


class RemoteIndexer:
    """Indexes selected remote folders into the catalog."""

    def __init__(
        self,
        database: Database,
        client: WebDavClient,
        thumbnail_cache: ThumbnailCache,
        concurrency: Optional[int] = None,
        carry_forward_capture: Optional[bool] = None,
        probe_sample_size: Optional[int] = None,
        probe_interval_seconds: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = database
        self.client = client
        self.cache = thumbnail_cache
        self.concurrency = max(2, min(4, concurrency or config.INDEXER_CONCURRENCY))
        self.carry_forward_capture = (
            config.CARRY_FORWARD_CAPTURE_TIMESTAMP if carry_forward_capture is None else carry_forward_capture
        )
        self.probe_sample_size = (
            config.HEAD_PROBE_SAMPLE_SIZE if probe_sample_size is None else probe_sample_size
        )
        self.probe_interval_ms = 1000 * (
            config.HEAD_PROBE_INTERVAL_SECONDS if probe_interval_seconds is None else probe_interval_seconds
        )
        self.clock = clock

    async def index_selected_folders(
        self,
        folders: Optional[list[str]] = None,
        is_stopped: Optional[Callable[[], bool]] = None,
    ) -> IndexResult:
        """
        Run one indexing pass.

        Args:
            folders: Remote folders to scan; defaults to the selected folders
            is_stopped: Polled before each scan and write phase

        Returns:
            IndexResult with counts and the aggregated status
        """
        stopped = is_stopped or (lambda: False)
        if folders is None:
            folders = [folder.remote_path for folder in self.db.get_selected_folders()]
        targets = list(dict.fromkeys(normalize_remote_path(folder) for folder in folders))

        if not targets:
            logger.info("No folders selected, nothing to index")
            return IndexResult(status=IndexStatus.COMPLETED)

        logger.info(f"Indexing {len(targets)} folder(s) with concurrency {self.concurrency}")
        semaphore = asyncio.Semaphore(self.concurrency)
        counts = {"synced": 0, "changed": 0, "pruned": 0}

        async def run_folder(folder: str) -> Optional[FolderScanOutcome]:
            async with semaphore:
                if stopped():
                    return None
                outcome = await self._scan_folder(folder)
            if stopped():
                return None
            synced, changed, pruned = self._apply_outcome(outcome)
            counts["synced"] += synced
            counts["changed"] += changed
            counts["pruned"] += pruned
            return outcome

        results = await asyncio.gather(*(run_folder(folder) for folder in targets))
        outcomes = [outcome for outcome in results if outcome is not None]

        status, error_code = aggregate_outcomes(outcomes) if outcomes else (IndexStatus.COMPLETED, None)
        result = IndexResult(
            status=status,
            synced_count=counts["synced"],
            changed_count=counts["changed"],
            pruned_count=counts["pruned"],
            failed_folders=[outcome.folder for outcome in outcomes if not outcome.ok],
            error_code=error_code,
        )

        if any(outcome.ok for outcome in outcomes) and not stopped():
            probed, probe_pruned = await self.probe_catalog()
            result.probed_count = probed
            result.pruned_count += probe_pruned

        if status in (IndexStatus.COMPLETED, IndexStatus.PARTIAL):
            self.db.set_metadata(LAST_INDEXED_KEY, datetime.now(timezone.utc).isoformat())

        logger.info(
            f"Indexing pass {result.status.value}: {result.synced_count} synced, "
            f"{result.changed_count} changed, {result.pruned_count} pruned, "
            f"{len(result.failed_folders)} failed folder(s)"
        )
        return result

    async def _scan_folder(self, folder: str) -> FolderScanOutcome:
        """Recursive listing with a single-level fallback scoped to the same folder."""
        listing = await self.client.list_media_files(folder, recursive=True)
        if listing.ok:
            return FolderScanOutcome(folder=folder, files=listing.data, recursive=True)

        if listing.error.category == ErrorCategory.NOT_FOUND:
            return FolderScanOutcome(folder=folder, error=listing.error, recursive=True)

        logger.warning(
            f"Recursive listing of {folder} failed ({listing.error.code}), "
            f"falling back to single-level listing"
        )
        fallback = await self.client.list_media_files(folder, recursive=False)
        if fallback.ok:
            return FolderScanOutcome(folder=folder, files=fallback.data, recursive=False)
        return FolderScanOutcome(folder=folder, error=fallback.error, recursive=False)

    def _apply_outcome(self, outcome: FolderScanOutcome) -> tuple[int, int, int]:
        """Write phase for one folder. Returns (synced, changed, pruned)."""
        now = self.clock()
        if not outcome.ok:
            if outcome.error.category == ErrorCategory.NOT_FOUND:
                pruned = self.purge_folder(outcome.folder)
                outcome.purged = True
                outcome.error = None
                self.db.upsert_checkpoint(SyncCheckpoint(
                    folder_path=outcome.folder,
                    last_sync_timestamp=now,
                    status=CheckpointStatus.COMPLETED,
                    last_error_code="not_found",
                    last_error_message="Folder no longer exists on the server",
                ))
                return 0, 0, pruned

            logger.error(f"Failed to index {outcome.folder}: {outcome.error.code} {outcome.error.message}")
            self.db.upsert_checkpoint(SyncCheckpoint(
                folder_path=outcome.folder,
                last_sync_timestamp=now,
                status=CheckpointStatus.FAILED,
                last_error_code=outcome.error.code,
                last_error_message=outcome.error.message,
            ))
            return 0, 0, 0

        items, changed, stale_thumbnails = self.merge_listing(outcome.files)
        self.db.upsert_media_items(items)
        self.cache.delete_files(stale_thumbnails)
        pruned = self.prune_stale(
            outcome.folder,
            {item.remote_path for item in items},
            include_nested=outcome.recursive,
        )
        self.db.upsert_checkpoint(SyncCheckpoint(
            folder_path=outcome.folder,
            last_sync_timestamp=now,
            status=CheckpointStatus.COMPLETED,
        ))
        logger.debug(
            f"Folder {outcome.folder}: {len(items)} items, {changed} changed, {pruned} pruned"
        )
        return len(items), changed, pruned

    def merge_listing(self, files: list[RemoteFile]) -> tuple[list[MediaItem], int, list[str]]:
        """Merge listed files with existing rows. Returns (items, changed count, stale thumbnail paths)."""
        incoming: dict[str, RemoteFile] = {}
        for entry in files:
            incoming[normalize_remote_path(entry.remote_path)] = entry
        existing = self.db.get_media_items_by_paths(incoming.keys())

        items = []
        changed = 0
        stale_thumbnails = []
        for remote_path, entry in incoming.items():
            previous = existing.get(remote_path)
            item, stale = self.merge_item(remote_path, entry, previous)
            if previous is None or item != previous:
                changed += 1
            if stale:
                stale_thumbnails.append(stale)
            items.append(item)
        return items, changed, stale_thumbnails

    def merge_item(
        self,
        remote_path: str,
        entry: RemoteFile,
        previous: Optional[MediaItem],
    ) -> tuple[MediaItem, Optional[str]]:
        """Build the catalog row for a listed file. Returns the row and a stale thumbnail path, if any."""
        capture = entry.capture_timestamp
        if capture is None and previous is not None and self.carry_forward_capture:
            capture = previous.capture_timestamp

        item = MediaItem(
            remote_path=remote_path,
            file_name=entry.name or remote_path.rsplit("/", 1)[-1],
            mime_type=entry.content_type or mimetypes.guess_type(entry.name)[0] or "application/octet-stream",
            size=entry.size,
            last_modified=entry.last_modified,
            etag=entry.etag,
            folder_path=parent_remote_folder(remote_path),
            capture_timestamp=capture,
            file_id=entry.file_id,
        )
        if previous is None:
            return item, None

        if not item.same_remote_metadata(previous):
            return item, previous.thumbnail_path

        if previous.thumbnail_status == ThumbnailStatus.READY:
            if self.cache.is_present(previous.thumbnail_path):
                item.thumbnail_path = previous.thumbnail_path
                item.thumbnail_status = ThumbnailStatus.READY
            return item, None

        # Unchanged rows that never reached READY keep their retry budget
        item.thumbnail_status = previous.thumbnail_status
        item.thumbnail_retry_count = previous.thumbnail_retry_count
        item.thumbnail_last_error = previous.thumbnail_last_error
        return item, None

    def prune_stale(self, folder: str, scanned_paths: set[str], include_nested: bool = True) -> int:
        """Delete rows under folder that this scan did not return."""
        existing = self.db.get_media_under_folder(folder, include_nested=include_nested)
        stale = [item for item in existing if item.remote_path not in scanned_paths]
        if not stale:
            return 0
        deleted = self.db.delete_media_items(item.remote_path for item in stale)
        self.cache.delete_files(item.thumbnail_path for item in deleted)
        logger.info(f"Pruned {len(deleted)} stale item(s) under {folder}")
        return len(deleted)

    def purge_folder(self, folder: str) -> int:
        """Remove every row nested under a folder that no longer exists remotely."""
        existing = self.db.get_media_under_folder(folder, include_nested=True)
        if not existing:
            return 0
        deleted = self.db.delete_media_items(item.remote_path for item in existing)
        self.cache.delete_files(item.thumbnail_path for item in deleted)
        logger.info(f"Folder {folder} is gone remotely, purged {len(deleted)} item(s)")
        return len(deleted)

    async def probe_catalog(self, force: bool = False) -> tuple[int, int]:
        """
        HEAD a small sample of suspicious rows and prune the ones that are gone.

        Runs at most once per probe interval unless forced. Returns (probed, pruned).
        """
        if self.probe_sample_size <= 0:
            return 0, 0
        now = self.clock()
        last_probe = self.db.get_metadata(LAST_PROBE_KEY)
        if not force and last_probe and now - int(last_probe) < self.probe_interval_ms:
            return 0, 0

        candidates = []
        for item in self.db.get_probe_candidates(self.probe_sample_size * 4):
            if item.thumbnail_status == ThumbnailStatus.READY and self.cache.is_present(item.thumbnail_path):
                continue
            candidates.append(item)
            if len(candidates) >= self.probe_sample_size:
                break

        gone = []
        for item in candidates:
            result = await self.client.head_file(item.remote_path)
            if result.ok and result.data is None:
                gone.append(item.remote_path)
            elif not result.ok and result.error.is_unreachable:
                break

        self.db.set_metadata(LAST_PROBE_KEY, str(now))
        if gone:
            deleted = self.db.delete_media_items(gone)
            self.cache.delete_files(item.thumbnail_path for item in deleted)
            logger.info(f"HEAD probe pruned {len(deleted)} missing item(s)")
        return len(candidates), len(gone)
