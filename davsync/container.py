"""
Composition root for davsync daemon.
Builds the store, repositories, scheduler and orchestrator and wires them together.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

from davsync.config import config
from davsync.db import Database
from davsync.detector import LocalChangeDetector
from davsync.jobs import ClientFactory, SyncJobs
from davsync.local_media import LocalMediaSource
from davsync.orchestrator import SyncOrchestrator
from davsync.policy import BackupPolicyRepository
from davsync.scheduler import JobScheduler
from davsync.session import SessionRepository
from davsync.thumbnail_cache import ThumbnailCache
from davsync.watcher import LibraryWatcher
from davsync.webdav import WebDavClient

logger = logging.getLogger(__name__)


class Container:
    """Owns every long-lived collaborator of the daemon."""

    def __init__(
        self,
        database: Optional[Database] = None,
        thumbnail_cache: Optional[ThumbnailCache] = None,
        sessions: Optional[SessionRepository] = None,
        policies: Optional[BackupPolicyRepository] = None,
        local_source: Optional[LocalMediaSource] = None,
        library_roots: Optional[Iterable[Path]] = None,
        client_factory: ClientFactory = WebDavClient,
        watch_local_library: Optional[bool] = None,
    ):
        self.db = database or Database()
        self.cache = thumbnail_cache or ThumbnailCache(config.THUMBNAIL_CACHE_DIR)
        self.sessions = sessions or SessionRepository()
        self.policies = policies or BackupPolicyRepository()
        self.local_source = local_source or LocalMediaSource()
        self.library_roots = list(config.LOCAL_LIBRARY_ROOTS if library_roots is None else library_roots)
        self.client_factory = client_factory
        self.watch_local_library = (
            config.WATCH_LOCAL_LIBRARY if watch_local_library is None else watch_local_library
        )

        self.detector = LocalChangeDetector(
            self.db, self.local_source, self.policies, library_roots=self.library_roots
        )
        self.scheduler = JobScheduler()
        self.jobs = SyncJobs(
            self.db,
            self.scheduler,
            self.sessions,
            self.policies,
            self.cache,
            self.detector,
            client_factory=client_factory,
        )
        self.orchestrator = SyncOrchestrator(
            self.db, self.scheduler, self.jobs, self.policies, self.cache
        )
        self.watcher = LibraryWatcher(
            roots=self.library_roots,
            on_changes=lambda changes: self.orchestrator.kick_detector(),
        )

    def initialize(self) -> None:
        """Prepare storage. Safe to call from the CLI without an event loop."""
        self.db.initialize()
        self.cache.ensure()

    async def start(self) -> None:
        """Startup sequence of the daemon. Must run on the event loop."""
        self.initialize()
        self.orchestrator.reconcile_thumbnail_cache()
        self.orchestrator.ensure_auto_sync_scheduled()
        self.orchestrator.apply_backup_scheduling()
        self.orchestrator.schedule_thumbnail_backfill_if_needed()

        if self.sessions.get_session() is not None and self.db.get_selected_folders():
            self.orchestrator.request_sync_now()
        else:
            logger.info("No session or selected folders, waiting for configuration")

        if self.watch_local_library:
            self.watcher.start()

    async def stop(self) -> None:
        self.watcher.stop()
        await self.scheduler.shutdown()
        self.db.close()


_container: Optional[Container] = None


def get_container() -> Container:
    """The process-wide container, built on first use."""
    global _container
    if _container is None:
        _container = Container()
    return _container


def set_container(container: Optional[Container]) -> None:
    global _container
    _container = container
