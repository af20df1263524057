"""
Background job definitions for davsync.
Binds the indexer, thumbnail acquirer, detector and upload processor to named
scheduler work and chains follow-up work between them.
"""

import asyncio
import logging
from typing import Callable, Optional

from davsync.config import config
from davsync.db import Database
from davsync.detector import LocalChangeDetector
from davsync.models import AuthSession, now_ms
from davsync.remote_indexer import IndexStatus, RemoteIndexer
from davsync.scheduler import (
    BackoffSpec,
    ExistingWorkPolicy,
    JobContext,
    JobResult,
    JobScheduler,
    WorkInfo,
)
from davsync.session import SessionRepository
from davsync.policy import BackupPolicyRepository
from davsync.thumbnail_cache import ThumbnailCache
from davsync.thumbnails import ThumbnailAcquirer
from davsync.uploader import UploadProcessor
from davsync.webdav import WebDavClient

logger = logging.getLogger(__name__)

# Unique work names
LIBRARY_SYNC = "library_sync"
THUMBNAIL_FETCH = "thumbnail_fetch"
LIBRARY_SYNC_AUTO_KICK = "library_sync_auto_kick"
MEDIA_UPLOAD = "media_upload"
LOCAL_MEDIA_DETECTOR = "local_media_detector"
LOCAL_MEDIA_DETECTOR_PERIODIC = "local_media_detector_periodic"
BACKUP_SCHEDULED_KICK = "backup_scheduled_kick"

ALL_WORK_NAMES = (
    LIBRARY_SYNC,
    THUMBNAIL_FETCH,
    LIBRARY_SYNC_AUTO_KICK,
    MEDIA_UPLOAD,
    LOCAL_MEDIA_DETECTOR,
    LOCAL_MEDIA_DETECTOR_PERIODIC,
    BACKUP_SCHEDULED_KICK,
)

NO_SESSION = "no_session"

ClientFactory = Callable[[AuthSession], WebDavClient]


class SyncJobs:
    """Worker coroutines and the enqueue helpers that chain them."""

    def __init__(
        self,
        database: Database,
        scheduler: JobScheduler,
        sessions: SessionRepository,
        policies: BackupPolicyRepository,
        thumbnail_cache: ThumbnailCache,
        detector: LocalChangeDetector,
        client_factory: ClientFactory = WebDavClient,
    ):
        self.db = database
        self.scheduler = scheduler
        self.sessions = sessions
        self.policies = policies
        self.cache = thumbnail_cache
        self.detector = detector
        self.client_factory = client_factory

        self.library_backoff = BackoffSpec(30.0, config.INDEXER_MAX_ATTEMPTS)
        self.thumbnail_backoff = BackoffSpec(30.0, 5)
        self.upload_backoff = BackoffSpec(30.0, config.UPLOAD_MAX_RETRY_ATTEMPTS)

    # Enqueue helpers

    def enqueue_library_sync(self, policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP) -> WorkInfo:
        return self.scheduler.enqueue_unique(
            LIBRARY_SYNC, self.library_sync, policy, backoff=self.library_backoff
        )

    def enqueue_thumbnail_backfill(
        self,
        policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP,
        initial_delay: float = 0.0,
    ) -> WorkInfo:
        return self.scheduler.enqueue_unique(
            THUMBNAIL_FETCH,
            self.thumbnail_fetch,
            policy,
            initial_delay=initial_delay,
            backoff=self.thumbnail_backoff,
        )

    def enqueue_detector(
        self,
        manual: bool = False,
        policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP,
    ) -> WorkInfo:
        return self.scheduler.enqueue_unique(
            LOCAL_MEDIA_DETECTOR, self.local_media_detect, policy, input={"manual": manual}
        )

    def enqueue_upload(
        self,
        manual: bool = False,
        policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP,
        initial_delay: float = 0.0,
    ) -> WorkInfo:
        return self.scheduler.enqueue_unique(
            MEDIA_UPLOAD,
            self.media_upload,
            policy,
            input={"manual": manual},
            initial_delay=initial_delay,
            backoff=self.upload_backoff,
        )

    def enqueue_upload_debounced(self) -> WorkInfo:
        """Coalesce bursts of detector output into one upload run."""
        return self.enqueue_upload(
            manual=False,
            policy=ExistingWorkPolicy.REPLACE,
            initial_delay=config.UPLOAD_DEBOUNCE_SECONDS,
        )

    # Workers

    async def library_sync(self, ctx: JobContext) -> JobResult:
        session = self.sessions.get_session()
        if session is None:
            logger.warning("Library sync skipped: no session")
            return JobResult.failure(error=NO_SESSION)

        async with self.client_factory(session) as client:
            indexer = RemoteIndexer(self.db, client, self.cache)
            result = await indexer.index_selected_folders(is_stopped=ctx.is_stopped)

        output = result.to_output()
        if result.status == IndexStatus.RETRY:
            return JobResult.retry(**output, error=result.error_code)
        if result.status == IndexStatus.FAILED:
            return JobResult.failure(**output, error=result.error_code)

        if not ctx.is_stopped():
            self.enqueue_thumbnail_backfill()
        return JobResult.success(**output)

    async def thumbnail_fetch(self, ctx: JobContext) -> JobResult:
        session = self.sessions.get_session()
        if session is None:
            return JobResult.failure(error=NO_SESSION)

        async with self.client_factory(session) as client:
            acquirer = ThumbnailAcquirer(self.db, client, self.cache)
            result = await acquirer.backfill_thumbnails(is_stopped=ctx.is_stopped)

        if result.aborted:
            return JobResult.retry(**result.to_output(), error="unreachable")
        if result.needs_follow_up and not ctx.is_stopped():
            self.enqueue_thumbnail_backfill(ExistingWorkPolicy.APPEND)
        return JobResult.success(**result.to_output())

    async def local_media_detect(self, ctx: JobContext) -> JobResult:
        manual = bool(ctx.input.get("manual", False))
        result = await asyncio.to_thread(self.detector.detect_and_queue, manual)
        if result.kick_upload and not ctx.is_stopped():
            self.enqueue_upload_debounced()
        return JobResult.success(**result.to_output())

    async def media_upload(self, ctx: JobContext) -> JobResult:
        session = self.sessions.get_session()
        if session is None:
            logger.warning("Upload run skipped: no session")
            return JobResult.failure(error=NO_SESSION, reportable_run=True, finished_at=now_ms())

        manual = bool(ctx.input.get("manual", False))
        async with self.client_factory(session) as client:
            processor = UploadProcessor(self.db, client, self.policies)
            result = await processor.drain(manual=manual, is_stopped=ctx.is_stopped)

        if not ctx.is_stopped():
            if result.changed_remote_data:
                self.enqueue_library_sync(ExistingWorkPolicy.KEEP)
            if result.next_retry_at is not None:
                delay = max(0.0, (result.next_retry_at - now_ms()) / 1000)
                self.enqueue_upload(manual=manual, policy=ExistingWorkPolicy.APPEND, initial_delay=delay)
        return JobResult.success(**result.to_output(finished_at=now_ms()))

    async def auto_sync_kick(self, ctx: JobContext) -> JobResult:
        if self.sessions.get_session() is None or not self.db.get_selected_folders():
            return JobResult.success(kicked=False)
        self.enqueue_library_sync(ExistingWorkPolicy.KEEP)
        return JobResult.success(kicked=True)

    async def backup_scheduled_kick(self, ctx: JobContext) -> JobResult:
        self.enqueue_detector(manual=False, policy=ExistingWorkPolicy.KEEP)
        return JobResult.success(kicked=True)

    async def run_once(self, name: str, manual: bool = False) -> Optional[WorkInfo]:
        """Enqueue one job and wait for it and its follow-ups of the same name."""
        enqueue = {
            LIBRARY_SYNC: lambda: self.enqueue_library_sync(ExistingWorkPolicy.KEEP),
            THUMBNAIL_FETCH: lambda: self.enqueue_thumbnail_backfill(ExistingWorkPolicy.KEEP),
            LOCAL_MEDIA_DETECTOR: lambda: self.enqueue_detector(manual, ExistingWorkPolicy.KEEP),
            MEDIA_UPLOAD: lambda: self.enqueue_upload(manual, ExistingWorkPolicy.KEEP),
        }
        if name not in enqueue:
            raise ValueError(f"Unknown job: {name}")
        enqueue[name]()
        return await self.scheduler.join(name)
