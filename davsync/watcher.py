"""
File watcher module for davsync daemon.
Watches local library roots for media changes with debouncing.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional
from datetime import datetime

from watchdog.observers import Observer
from watchdog.events import (
    FileSystemEventHandler,
    FileCreatedEvent,
    FileModifiedEvent,
    FileDeletedEvent,
    FileMovedEvent,
)

from davsync.config import config
from davsync.models import MediaKind

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict], None]


class DebouncedHandler(FileSystemEventHandler):
    """
    File system event handler with debouncing.
    Bursts of changes are coalesced into a single callback once the
    library has been quiet for the debounce window.
    """

    def __init__(self, on_changes: ChangeCallback, debounce_seconds: float = 2.0):
        super().__init__()
        self.on_changes = on_changes
        self.debounce_seconds = debounce_seconds

        # Pending events per path, flushed together
        self._pending: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def _should_handle(self, path: str) -> bool:
        """Check if path looks like media."""
        p = Path(path)
        return (
            not p.name.startswith('.')
            and MediaKind.from_mime_or_name(None, p.name) != MediaKind.UNKNOWN
        )

    def _record(self, path: str, event_type: str) -> None:
        with self._lock:
            # Don't let a later modify hide a delete
            if event_type == "modified" and self._pending.get(path, {}).get("type") == "deleted":
                return
            self._pending[path] = {"type": event_type, "time": datetime.now()}
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def _flush(self) -> None:
        """Hand all pending changes to the callback."""
        with self._lock:
            changes = self._pending
            self._pending = {}
            self._timer = None
        if not changes:
            return
        logger.info(f"Detected {len(changes)} local media change(s)")
        try:
            self.on_changes(changes)
        except Exception as e:
            logger.error(f"Error handling local changes: {e}")

    def on_created(self, event: FileCreatedEvent) -> None:
        """Handle file creation."""
        if event.is_directory or not self._should_handle(event.src_path):
            return
        logger.debug(f"File created: {event.src_path}")
        self._record(event.src_path, "created")

    def on_modified(self, event: FileModifiedEvent) -> None:
        """Handle file modification."""
        if event.is_directory or not self._should_handle(event.src_path):
            return
        logger.debug(f"File modified: {event.src_path}")
        self._record(event.src_path, "modified")

    def on_deleted(self, event: FileDeletedEvent) -> None:
        """Handle file deletion."""
        if event.is_directory or not self._should_handle(event.src_path):
            return
        logger.debug(f"File deleted: {event.src_path}")
        self._record(event.src_path, "deleted")

    def on_moved(self, event: FileMovedEvent) -> None:
        """Handle file rename/move as delete of the old path plus create of the new one."""
        if event.is_directory:
            return
        logger.debug(f"File moved: {event.src_path} -> {event.dest_path}")
        if self._should_handle(event.src_path):
            self._record(event.src_path, "deleted")
        if self._should_handle(event.dest_path):
            self._record(event.dest_path, "created")

    def stop(self) -> None:
        """Stop the pending timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending.clear()


class LibraryWatcher:
    """
    Watches local library roots for media changes.
    Uses watchdog for cross-platform file system monitoring.
    """

    def __init__(
        self,
        roots: Optional[Iterable[Path]] = None,
        on_changes: Optional[ChangeCallback] = None,
        debounce_seconds: Optional[float] = None
    ):
        self.roots = [Path(root) for root in (config.LOCAL_LIBRARY_ROOTS if roots is None else roots)]
        self.on_changes = on_changes or (lambda changes: None)
        self.debounce_seconds = debounce_seconds or config.DEBOUNCE_SECONDS

        self._observer: Optional[Observer] = None
        self._handler: Optional[DebouncedHandler] = None
        self._running = False

    def start(self) -> None:
        """Start watching the library roots that exist."""
        if self._running:
            logger.warning("Watcher already running")
            return

        roots = [root for root in self.roots if root.is_dir()]
        if not roots:
            logger.warning("No local library roots to watch")
            return

        self._handler = DebouncedHandler(
            on_changes=self.on_changes,
            debounce_seconds=self.debounce_seconds,
        )

        self._observer = Observer()
        for root in roots:
            logger.info(f"Watching local library: {root}")
            self._observer.schedule(self._handler, str(root), recursive=True)

        self._observer.start()
        self._running = True

        logger.info("Library watcher started")

    def stop(self) -> None:
        """Stop watching."""
        if not self._running:
            return

        logger.info("Stopping library watcher")

        if self._handler:
            self._handler.stop()

        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)

        self._running = False
        self._observer = None
        self._handler = None

        logger.info("Library watcher stopped")

    @property
    def is_running(self) -> bool:
        """Check if watcher is running."""
        return self._running
