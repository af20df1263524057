"""
Thumbnail acquisition module for davsync.
Materializes catalog thumbnails through a fallback chain: disk cache, server
preview, local video frame extraction, and local image transcode.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from davsync.config import config
from davsync.db import Database
from davsync.errors import IO_ERROR, WebDavError
from davsync.imaging import UnsupportedMediaError, extract_video_frame, transcode_image
from davsync.models import MediaItem, MediaKind, ThumbnailStatus, ThumbnailUpdate
from davsync.thumbnail_cache import ThumbnailCache
from davsync.webdav import WebDavClient

logger = logging.getLogger(__name__)

# Preview statuses that mean "the server cannot render this video", not a server fault
UNSUPPORTED_VIDEO_PREVIEW_STATUSES = frozenset({400, 404, 415, 501})

VIDEO_FRAME_UNSUPPORTED = "video_frame_unsupported"
IMAGE_DECODE_UNSUPPORTED = "image_decode_unsupported"
SOURCE_TOO_LARGE = "source_too_large"


class AcquireKind(str, Enum):
    READY = "READY"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    UNREACHABLE = "UNREACHABLE"


@dataclass
class AcquireOutcome:
    kind: AcquireKind
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ready(cls, path) -> "AcquireOutcome":
        return cls(AcquireKind.READY, thumbnail_path=str(path))

    @classmethod
    def skipped(cls, reason: str) -> "AcquireOutcome":
        return cls(AcquireKind.SKIPPED, error=reason)

    @classmethod
    def failed(cls, error: str) -> "AcquireOutcome":
        return cls(AcquireKind.FAILED, error=error)

    @classmethod
    def unreachable(cls, error: str) -> "AcquireOutcome":
        return cls(AcquireKind.UNREACHABLE, error=error)

    @classmethod
    def from_error(cls, error: WebDavError) -> "AcquireOutcome":
        if error.is_unreachable:
            return cls.unreachable(error.code)
        return cls.failed(error.code)

    def to_update(self, item: MediaItem) -> Optional[ThumbnailUpdate]:
        """The catalog write for this outcome, bound to the version of item that was fetched."""
        version = dict(etag=item.etag, size=item.size)
        if self.kind == AcquireKind.READY:
            return ThumbnailUpdate(
                item.remote_path, ThumbnailStatus.READY, thumbnail_path=self.thumbnail_path, **version
            )
        if self.kind == AcquireKind.SKIPPED:
            return ThumbnailUpdate(item.remote_path, ThumbnailStatus.SKIPPED, error=self.error, **version)
        if self.kind == AcquireKind.FAILED:
            return ThumbnailUpdate(
                item.remote_path, ThumbnailStatus.FAILED, error=self.error, increment_retry=True, **version
            )
        return None


@dataclass
class BackfillResult:
    fetched_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    healed_count: int = 0
    pending_count: int = 0
    exhausted_count: int = 0
    aborted: bool = False
    stopped: bool = False

    @property
    def needs_follow_up(self) -> bool:
        return self.pending_count > 0 and not self.aborted and not self.stopped

    def to_output(self) -> dict:
        return {
            "fetched_count": self.fetched_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
            "healed_count": self.healed_count,
            "pending_count": self.pending_count,
            "exhausted_count": self.exhausted_count,
            "aborted": self.aborted,
        }


class ThumbnailWriteBuffer:
    """Collects thumbnail updates and commits them in short batched transactions."""

    def __init__(
        self,
        database: Database,
        flush_every: int,
        flush_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        cache: Optional[ThumbnailCache] = None,
    ):
        self.db = database
        self.flush_every = max(1, flush_every)
        self.flush_seconds = flush_seconds
        self.clock = clock
        self.cache = cache
        self._pending: list[ThumbnailUpdate] = []
        self._last_flush = clock()
        self._seen_success = False
        self.flush_count = 0

    def add(self, update: ThumbnailUpdate) -> None:
        self._pending.append(update)
        first_success = update.status == ThumbnailStatus.READY and not self._seen_success
        if update.status == ThumbnailStatus.READY:
            self._seen_success = True
        if (
            first_success
            or len(self._pending) >= self.flush_every
            or self.clock() - self._last_flush >= self.flush_seconds
        ):
            self.flush()

    def flush(self) -> int:
        if not self._pending:
            return 0
        stale = self.db.apply_thumbnail_updates(self._pending)
        written = len(self._pending) - len(stale)
        if stale:
            logger.info(f"Dropped {len(stale)} thumbnail update(s) for rows that changed or vanished")
            if self.cache is not None:
                self.cache.delete_files(u.thumbnail_path for u in stale if u.thumbnail_path)
        self._pending = []
        self._last_flush = self.clock()
        self.flush_count += 1
        return written


class ThumbnailAcquirer:
    """Backfills thumbnails for catalog rows."""

    def __init__(
        self,
        database: Database,
        client: WebDavClient,
        thumbnail_cache: ThumbnailCache,
        size: Optional[int] = None,
        concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        flush_every: Optional[int] = None,
        flush_seconds: Optional[float] = None,
        ffmpeg_binary: Optional[str] = None,
        max_source_bytes: Optional[int] = None,
    ):
        self.db = database
        self.client = client
        self.cache = thumbnail_cache
        self.size = size or config.THUMBNAIL_SIZE
        self.concurrency = max(1, concurrency or config.THUMBNAIL_CONCURRENCY)
        self.max_retries = max_retries or config.THUMBNAIL_MAX_RETRIES
        self.flush_every = flush_every or config.THUMBNAIL_FLUSH_EVERY
        self.flush_seconds = config.THUMBNAIL_FLUSH_SECONDS if flush_seconds is None else flush_seconds
        self.ffmpeg_binary = ffmpeg_binary or config.FFMPEG_BINARY
        self.max_source_bytes = max_source_bytes or config.TRANSCODE_MAX_SOURCE_BYTES

    async def backfill_thumbnails(
        self,
        batch_limit: Optional[int] = None,
        is_stopped: Optional[Callable[[], bool]] = None,
    ) -> BackfillResult:
        """
        Acquire thumbnails for up to batch_limit rows.

        A DNS or connect failure aborts the batch without marking the
        affected rows failed; the caller should retry the whole run.
        """
        stopped = is_stopped or (lambda: False)
        limit = batch_limit or config.THUMBNAIL_BATCH_LIMIT
        result = BackfillResult()

        result.healed_count = self.reconcile_ready_thumbnails()
        self.cache.ensure()

        items = self.db.get_thumbnail_candidates(limit, self.max_retries)
        logger.info(f"Thumbnail backfill: {len(items)} candidate(s)")
        buffer = ThumbnailWriteBuffer(self.db, self.flush_every, self.flush_seconds, cache=self.cache)

        for start in range(0, len(items), self.concurrency):
            if stopped():
                result.stopped = True
                break
            group = items[start:start + self.concurrency]
            outcomes = await asyncio.gather(*(self.acquire(item) for item in group))

            for item, outcome in zip(group, outcomes):
                update = outcome.to_update(item)
                if update is None:
                    continue
                buffer.add(update)
                if outcome.kind == AcquireKind.READY:
                    result.fetched_count += 1
                elif outcome.kind == AcquireKind.SKIPPED:
                    result.skipped_count += 1
                else:
                    result.failed_count += 1

            if any(outcome.kind == AcquireKind.UNREACHABLE for outcome in outcomes):
                logger.warning("Server unreachable, aborting thumbnail batch for retry")
                result.aborted = True
                break

        buffer.flush()
        result.pending_count = self.db.count_pending_thumbnails(self.max_retries)
        result.exhausted_count = self.db.count_exhausted_thumbnails(self.max_retries)
        logger.info(
            f"Thumbnail backfill done: {result.fetched_count} ready, {result.skipped_count} skipped, "
            f"{result.failed_count} failed, {result.pending_count} pending"
        )
        return result

    def reconcile_ready_thumbnails(self, max_bytes: Optional[int] = None) -> int:
        """Reset READY rows whose file is missing (or larger than max_bytes) back to PENDING."""
        broken = []
        oversized = []
        for remote_path, thumbnail_path in self.db.get_ready_thumbnail_refs():
            if not self.cache.is_present(thumbnail_path):
                broken.append(remote_path)
            elif max_bytes is not None and self.cache.size_of(thumbnail_path) > max_bytes:
                broken.append(remote_path)
                oversized.append(thumbnail_path)
        if not broken:
            return 0
        self.cache.delete_files(oversized)
        reset = self.db.reset_thumbnails_to_pending(broken)
        logger.info(f"Reset {reset} READY thumbnail reference(s) back to PENDING")
        return reset

    async def acquire(self, item: MediaItem) -> AcquireOutcome:
        """Run the fallback chain for one row. Never raises for per-item failures."""
        cached = self.cache.path_for(item.remote_path)
        if self.cache.is_present(str(cached)):
            return AcquireOutcome.ready(cached)

        kind = item.kind
        preview = await self.client.fetch_preview(item.remote_path, self.size)
        if preview.ok:
            return self._persist(item, preview.data)

        error = preview.error
        if error.is_unreachable:
            return AcquireOutcome.unreachable(error.code)

        if kind == MediaKind.VIDEO:
            if error.status_code in UNSUPPORTED_VIDEO_PREVIEW_STATUSES:
                return await self._video_frame(item)
            return AcquireOutcome.failed(error.code)

        if kind == MediaKind.IMAGE:
            return await self._transcode(item)

        return AcquireOutcome.failed(error.code)

    def _persist(self, item: MediaItem, data: bytes) -> AcquireOutcome:
        try:
            path = self.cache.write_atomic(item.remote_path, data)
        except OSError as e:
            logger.error(f"Failed to write thumbnail for {item.remote_path}: {e}")
            return AcquireOutcome.failed(IO_ERROR)
        return AcquireOutcome.ready(path)

    async def _video_frame(self, item: MediaItem) -> AcquireOutcome:
        source = self.cache.temp_path(suffix=".video")
        frame = self.cache.temp_path(suffix=".jpg")
        try:
            download = await self.client.download_to_file(item.remote_path, source, self.max_source_bytes)
            if not download.ok:
                if download.error.code == SOURCE_TOO_LARGE:
                    return AcquireOutcome.skipped(SOURCE_TOO_LARGE)
                return AcquireOutcome.from_error(download.error)
            try:
                data = await extract_video_frame(source, frame, self.size, self.ffmpeg_binary)
            except UnsupportedMediaError as e:
                logger.info(f"No local frame for {item.remote_path}: {e}")
                return AcquireOutcome.skipped(VIDEO_FRAME_UNSUPPORTED)
            except OSError as e:
                logger.warning(f"Frame extraction I/O failure for {item.remote_path}: {e}")
                return AcquireOutcome.failed(IO_ERROR)
            return self._persist(item, data)
        finally:
            source.unlink(missing_ok=True)
            frame.unlink(missing_ok=True)

    async def _transcode(self, item: MediaItem) -> AcquireOutcome:
        source = self.cache.temp_path(suffix=".src")
        try:
            download = await self.client.download_to_file(item.remote_path, source, self.max_source_bytes)
            if not download.ok:
                if download.error.code == SOURCE_TOO_LARGE:
                    return AcquireOutcome.skipped(SOURCE_TOO_LARGE)
                return AcquireOutcome.from_error(download.error)
            try:
                data = await asyncio.to_thread(transcode_image, source, self.size)
            except UnsupportedMediaError as e:
                logger.info(f"Cannot decode {item.remote_path} locally: {e}")
                return AcquireOutcome.skipped(IMAGE_DECODE_UNSUPPORTED)
            except OSError as e:
                logger.warning(f"Transcode I/O failure for {item.remote_path}: {e}")
                return AcquireOutcome.failed(IO_ERROR)
            return self._persist(item, data)
        finally:
            source.unlink(missing_ok=True)
