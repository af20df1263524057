"""
Database module for davsync daemon.
Manages the SQLite catalog, sync checkpoints, upload queue and uploaded-media registry.
"""

import sqlite3
import logging
import threading
from pathlib import Path
from contextlib import contextmanager
from typing import Iterable, Optional, Generator

from davsync.config import config
from davsync.models import (
    MediaItem,
    SelectedFolder,
    SyncCheckpoint,
    ThumbnailStatus,
    ThumbnailUpdate,
    UploadedMediaRecord,
    UploadQueueEntry,
    UploadStatus,
    VIDEO_EXTENSIONS,
    now_ms,
)
from davsync.paths import folder_path_aliases, folder_prefix_like, normalize_remote_path

logger = logging.getLogger(__name__)

# SQLite caps host parameters per statement; keep IN (...) lists well below it
QUERY_CHUNK_SIZE = 400

# Queue rows in these states block a new entry for the same key and operation
BLOCKING_UPLOAD_STATUSES = (UploadStatus.PENDING.value, UploadStatus.UPLOADING.value, UploadStatus.FAILED.value)


def _chunks(values: list, size: int = QUERY_CHUNK_SIZE) -> Iterable[list]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class Database:
    """SQLite database manager for the media catalog."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row
            # Enable foreign keys
            self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    @contextmanager
    def cursor(self) -> Generator[sqlite3.Cursor, None, None]:
        """Context manager for database cursor with auto-commit.

        Each block is one transaction; the lock serializes writers across
        the event loop and watcher threads.
        """
        with self._lock:
            conn = self.connect()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Create database schema if not exists."""
        logger.info(f"Initializing database at {self.db_path}")

        with self.cursor() as cur:
            # Remote media catalog
            cur.execute("""
                CREATE TABLE IF NOT EXISTS media_items (
                    remote_path TEXT PRIMARY KEY,
                    file_name TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    last_modified INTEGER NOT NULL,
                    capture_timestamp INTEGER,
                    timeline_sort_key INTEGER NOT NULL,
                    etag TEXT NOT NULL,
                    file_id TEXT,
                    folder_path TEXT NOT NULL,
                    thumbnail_path TEXT,
                    thumbnail_status TEXT NOT NULL DEFAULT 'PENDING',
                    thumbnail_retry_count INTEGER NOT NULL DEFAULT 0,
                    thumbnail_last_error TEXT
                )
            """)

            # Per-folder result of the last indexing pass
            cur.execute("""
                CREATE TABLE IF NOT EXISTS sync_checkpoints (
                    folder_path TEXT PRIMARY KEY,
                    last_sync_timestamp INTEGER NOT NULL,
                    last_etag TEXT,
                    status TEXT NOT NULL,
                    last_error_code TEXT,
                    last_error_message TEXT
                )
            """)

            # Remote folders chosen for indexing
            cur.execute("""
                CREATE TABLE IF NOT EXISTS selected_folders (
                    remote_path TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    added_timestamp INTEGER NOT NULL
                )
            """)

            # Manual albums
            cur.execute("""
                CREATE TABLE IF NOT EXISTS albums (
                    album_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT UNIQUE NOT NULL,
                    created_at INTEGER NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS album_media (
                    album_id INTEGER NOT NULL,
                    media_remote_path TEXT NOT NULL,
                    added_at INTEGER NOT NULL,
                    PRIMARY KEY (album_id, media_remote_path),
                    FOREIGN KEY (album_id) REFERENCES albums(album_id) ON DELETE CASCADE,
                    FOREIGN KEY (media_remote_path) REFERENCES media_items(remote_path) ON DELETE CASCADE
                )
            """)

            # Durable upload/delete queue
            cur.execute("""
                CREATE TABLE IF NOT EXISTS upload_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stable_key TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    local_uri TEXT,
                    mime_type TEXT NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0,
                    capture_timestamp INTEGER NOT NULL DEFAULT 0,
                    target_remote_folder TEXT NOT NULL,
                    target_file_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    last_attempt_at INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at INTEGER NOT NULL DEFAULT 0,
                    resolved_remote_path TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            # What has been backed up, keyed by the device stable key
            cur.execute("""
                CREATE TABLE IF NOT EXISTS uploaded_media_registry (
                    stable_key TEXT PRIMARY KEY,
                    remote_path TEXT NOT NULL,
                    last_known_local_uri TEXT,
                    size INTEGER NOT NULL,
                    capture_timestamp INTEGER NOT NULL,
                    last_seen_at INTEGER NOT NULL,
                    uploaded_at INTEGER NOT NULL,
                    deleted_remotely_at INTEGER
                )
            """)

            # Metadata table for one-shot flags and timestamps
            cur.execute("""
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

            # Create indexes for performance
            cur.execute("CREATE INDEX IF NOT EXISTS idx_media_folder_path ON media_items(folder_path)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_media_thumbnail_status ON media_items(thumbnail_status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_media_timeline ON media_items(timeline_sort_key)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_album_media_path ON album_media(media_remote_path)")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_upload_status_next ON upload_queue(status, next_attempt_at)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_upload_created ON upload_queue(created_at)")
            cur.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_upload_active_key
                ON upload_queue(stable_key, operation)
                WHERE status IN ('PENDING', 'UPLOADING')
            """)
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_registry_remote_path ON uploaded_media_registry(remote_path)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_registry_deleted ON uploaded_media_registry(deleted_remotely_at)"
            )

        logger.info("Database initialized successfully")

    # Media catalog

    def get_media_item(self, remote_path: str) -> Optional[MediaItem]:
        """Get catalog row by remote path."""
        with self.cursor() as cur:
            cur.execute("SELECT * FROM media_items WHERE remote_path = ?", (remote_path,))
            row = cur.fetchone()
            return MediaItem.from_row(dict(row)) if row else None

    def get_media_items_by_paths(self, remote_paths: Iterable[str]) -> dict[str, MediaItem]:
        """Bulk lookup, chunked to stay under the parameter limit."""
        paths = list(dict.fromkeys(remote_paths))
        found: dict[str, MediaItem] = {}
        with self.cursor() as cur:
            for chunk in _chunks(paths):
                placeholders = ",".join("?" for _ in chunk)
                cur.execute(
                    f"SELECT * FROM media_items WHERE remote_path IN ({placeholders})",
                    chunk,
                )
                for row in cur.fetchall():
                    item = MediaItem.from_row(dict(row))
                    found[item.remote_path] = item
        return found

    def upsert_media_items(self, items: list[MediaItem]) -> int:
        """Insert or update catalog rows in one transaction. Returns row count."""
        if not items:
            return 0
        with self.cursor() as cur:
            cur.executemany("""
                INSERT INTO media_items (
                    remote_path, file_name, mime_type, size, last_modified,
                    capture_timestamp, timeline_sort_key, etag, file_id, folder_path,
                    thumbnail_path, thumbnail_status, thumbnail_retry_count, thumbnail_last_error
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(remote_path) DO UPDATE SET
                    file_name = excluded.file_name,
                    mime_type = excluded.mime_type,
                    size = excluded.size,
                    last_modified = excluded.last_modified,
                    capture_timestamp = excluded.capture_timestamp,
                    timeline_sort_key = excluded.timeline_sort_key,
                    etag = excluded.etag,
                    file_id = excluded.file_id,
                    folder_path = excluded.folder_path,
                    thumbnail_path = excluded.thumbnail_path,
                    thumbnail_status = excluded.thumbnail_status,
                    thumbnail_retry_count = excluded.thumbnail_retry_count,
                    thumbnail_last_error = excluded.thumbnail_last_error
            """, [
                (
                    item.remote_path, item.file_name, item.mime_type, item.size,
                    item.last_modified, item.capture_timestamp, item.timeline_sort_key,
                    item.etag, item.file_id, item.folder_path, item.thumbnail_path,
                    item.thumbnail_status.value, item.thumbnail_retry_count,
                    item.thumbnail_last_error,
                )
                for item in items
            ])
        return len(items)

    def get_media_under_folder(self, folder: str, include_nested: bool = True) -> list[MediaItem]:
        """Catalog rows whose folder is the given folder (any alias) or, optionally, below it."""
        aliases = sorted(folder_path_aliases(folder))
        placeholders = ",".join("?" for _ in aliases)
        query = f"SELECT * FROM media_items WHERE folder_path IN ({placeholders})"
        params: list = list(aliases)
        prefix = folder_prefix_like(folder)
        if include_nested:
            if prefix is None:
                query = "SELECT * FROM media_items"
                params = []
            else:
                query += " OR folder_path LIKE ? ESCAPE '\\'"
                params.append(prefix)
        with self.cursor() as cur:
            cur.execute(query, params)
            return [MediaItem.from_row(dict(row)) for row in cur.fetchall()]

    def delete_media_items(self, remote_paths: Iterable[str]) -> list[MediaItem]:
        """Delete catalog rows. Returns the deleted rows so callers can drop thumbnail files."""
        paths = list(dict.fromkeys(remote_paths))
        deleted: list[MediaItem] = []
        with self.cursor() as cur:
            for chunk in _chunks(paths):
                placeholders = ",".join("?" for _ in chunk)
                cur.execute(
                    f"SELECT * FROM media_items WHERE remote_path IN ({placeholders})",
                    chunk,
                )
                deleted.extend(MediaItem.from_row(dict(row)) for row in cur.fetchall())
                cur.execute(
                    f"DELETE FROM media_items WHERE remote_path IN ({placeholders})",
                    chunk,
                )
        return deleted

    def list_media(self, limit: int = 100, offset: int = 0, folder: Optional[str] = None) -> list[MediaItem]:
        """Timeline page, newest first."""
        with self.cursor() as cur:
            if folder:
                normalized = normalize_remote_path(folder)
                prefix = folder_prefix_like(normalized)
                if prefix is None:
                    cur.execute("""
                        SELECT * FROM media_items
                        ORDER BY timeline_sort_key DESC, remote_path
                        LIMIT ? OFFSET ?
                    """, (limit, offset))
                else:
                    cur.execute("""
                        SELECT * FROM media_items
                        WHERE folder_path = ? OR folder_path LIKE ? ESCAPE '\\'
                        ORDER BY timeline_sort_key DESC, remote_path
                        LIMIT ? OFFSET ?
                    """, (normalized, prefix, limit, offset))
            else:
                cur.execute("""
                    SELECT * FROM media_items
                    ORDER BY timeline_sort_key DESC, remote_path
                    LIMIT ? OFFSET ?
                """, (limit, offset))
            return [MediaItem.from_row(dict(row)) for row in cur.fetchall()]

    # Thumbnail state

    def get_thumbnail_candidates(self, limit: int, max_retries: int) -> list[MediaItem]:
        """Rows needing a thumbnail: PENDING first, then retryable FAILED, newest first."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM media_items
                WHERE thumbnail_status = 'PENDING'
                   OR (thumbnail_status = 'FAILED' AND thumbnail_retry_count < ?)
                ORDER BY CASE thumbnail_status WHEN 'PENDING' THEN 0 ELSE 1 END,
                         timeline_sort_key DESC
                LIMIT ?
            """, (max_retries, limit))
            return [MediaItem.from_row(dict(row)) for row in cur.fetchall()]

    def apply_thumbnail_updates(self, updates: list[ThumbnailUpdate]) -> list[ThumbnailUpdate]:
        """
        Write thumbnail fields for many rows in one transaction.

        Returns the updates that matched no row because the row was pruned or
        its etag or size changed after the thumbnail was fetched.
        """
        stale: list[ThumbnailUpdate] = []
        if not updates:
            return stale
        with self.cursor() as cur:
            for update in updates:
                cur.execute("""
                    UPDATE media_items SET
                        thumbnail_status = ?,
                        thumbnail_path = ?,
                        thumbnail_last_error = ?,
                        thumbnail_retry_count = CASE
                            WHEN ? THEN thumbnail_retry_count + 1
                            WHEN ? = 'READY' THEN 0
                            ELSE thumbnail_retry_count
                        END
                    WHERE remote_path = ?
                      AND (? IS NULL OR (size = ? AND etag IS ?))
                """, (
                    update.status.value,
                    update.thumbnail_path,
                    update.error,
                    1 if update.increment_retry else 0,
                    update.status.value,
                    update.remote_path,
                    update.size,
                    update.size,
                    update.etag,
                ))
                if cur.rowcount == 0:
                    stale.append(update)
        return stale

    def count_pending_thumbnails(self, max_retries: int) -> int:
        with self.cursor() as cur:
            cur.execute("""
                SELECT COUNT(*) AS count FROM media_items
                WHERE thumbnail_status = 'PENDING'
                   OR (thumbnail_status = 'FAILED' AND thumbnail_retry_count < ?)
            """, (max_retries,))
            return cur.fetchone()["count"]

    def count_exhausted_thumbnails(self, max_retries: int) -> int:
        with self.cursor() as cur:
            cur.execute("""
                SELECT COUNT(*) AS count FROM media_items
                WHERE thumbnail_status = 'FAILED' AND thumbnail_retry_count >= ?
            """, (max_retries,))
            return cur.fetchone()["count"]

    def get_dominant_exhausted_error(self, max_retries: int) -> Optional[tuple[str, int]]:
        """Most frequent error among exhausted thumbnail failures."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT COALESCE(thumbnail_last_error, 'unknown') AS error, COUNT(*) AS count
                FROM media_items
                WHERE thumbnail_status = 'FAILED' AND thumbnail_retry_count >= ?
                GROUP BY COALESCE(thumbnail_last_error, 'unknown')
                ORDER BY count DESC, error
                LIMIT 1
            """, (max_retries,))
            row = cur.fetchone()
            return (row["error"], row["count"]) if row else None

    def requeue_exhausted_thumbnails(self, max_retries: int, error_code: Optional[str] = None) -> int:
        """Reset exhausted failures (optionally only one error code) to PENDING."""
        query = """
            UPDATE media_items SET
                thumbnail_status = 'PENDING',
                thumbnail_retry_count = 0,
                thumbnail_last_error = NULL
            WHERE thumbnail_status = 'FAILED' AND thumbnail_retry_count >= ?
        """
        params: list = [max_retries]
        if error_code is not None:
            query += " AND thumbnail_last_error = ?"
            params.append(error_code)
        with self.cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def requeue_skipped_videos(self) -> int:
        """Give skipped videos another chance, e.g. after ffmpeg becomes available."""
        ext_clauses = " OR ".join("LOWER(file_name) LIKE ?" for _ in VIDEO_EXTENSIONS)
        params = [f"%.{ext}" for ext in sorted(VIDEO_EXTENSIONS)]
        with self.cursor() as cur:
            cur.execute(f"""
                UPDATE media_items SET
                    thumbnail_status = 'PENDING',
                    thumbnail_retry_count = 0,
                    thumbnail_last_error = NULL
                WHERE thumbnail_status = 'SKIPPED'
                  AND (mime_type LIKE 'video/%' OR {ext_clauses})
            """, params)
            return cur.rowcount

    def get_ready_thumbnail_refs(self) -> list[tuple[str, str]]:
        """(remote_path, thumbnail_path) for every READY row."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT remote_path, thumbnail_path FROM media_items
                WHERE thumbnail_status = 'READY'
            """)
            return [(row["remote_path"], row["thumbnail_path"]) for row in cur.fetchall()]

    def reset_thumbnails_to_pending(self, remote_paths: Iterable[str]) -> int:
        paths = list(remote_paths)
        count = 0
        with self.cursor() as cur:
            for chunk in _chunks(paths):
                placeholders = ",".join("?" for _ in chunk)
                cur.execute(f"""
                    UPDATE media_items SET
                        thumbnail_status = 'PENDING',
                        thumbnail_path = NULL,
                        thumbnail_retry_count = 0,
                        thumbnail_last_error = NULL
                    WHERE remote_path IN ({placeholders})
                """, chunk)
                count += cur.rowcount
        return count

    def get_probe_candidates(self, limit: int) -> list[MediaItem]:
        """Rows worth a HEAD existence check: failures first, then READY rows."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM media_items
                WHERE thumbnail_status IN ('FAILED', 'SKIPPED', 'READY')
                ORDER BY CASE thumbnail_status
                            WHEN 'FAILED' THEN 0
                            WHEN 'SKIPPED' THEN 1
                            ELSE 2
                         END,
                         thumbnail_retry_count DESC,
                         timeline_sort_key DESC
                LIMIT ?
            """, (limit,))
            return [MediaItem.from_row(dict(row)) for row in cur.fetchall()]

    # Checkpoints

    def upsert_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO sync_checkpoints (
                    folder_path, last_sync_timestamp, last_etag, status,
                    last_error_code, last_error_message
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(folder_path) DO UPDATE SET
                    last_sync_timestamp = excluded.last_sync_timestamp,
                    last_etag = COALESCE(excluded.last_etag, sync_checkpoints.last_etag),
                    status = excluded.status,
                    last_error_code = excluded.last_error_code,
                    last_error_message = excluded.last_error_message
            """, (
                normalize_remote_path(checkpoint.folder_path),
                checkpoint.last_sync_timestamp,
                checkpoint.last_etag,
                checkpoint.status.value,
                checkpoint.last_error_code,
                checkpoint.last_error_message,
            ))

    def get_checkpoints(self) -> list[dict]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM sync_checkpoints ORDER BY folder_path")
            return [dict(row) for row in cur.fetchall()]

    # Selected folders

    def get_selected_folders(self) -> list[SelectedFolder]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM selected_folders ORDER BY remote_path")
            return [SelectedFolder(**dict(row)) for row in cur.fetchall()]

    def add_selected_folder(self, remote_path: str, display_name: Optional[str] = None) -> SelectedFolder:
        normalized = normalize_remote_path(remote_path)
        name = display_name or normalized.rsplit("/", 1)[-1] or "/"
        folder = SelectedFolder(remote_path=normalized, display_name=name, added_timestamp=now_ms())
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO selected_folders (remote_path, display_name, added_timestamp)
                VALUES (?, ?, ?)
                ON CONFLICT(remote_path) DO UPDATE SET display_name = excluded.display_name
            """, (folder.remote_path, folder.display_name, folder.added_timestamp))
        return folder

    def remove_selected_folder(self, remote_path: str) -> bool:
        normalized = normalize_remote_path(remote_path)
        with self.cursor() as cur:
            cur.execute("DELETE FROM selected_folders WHERE remote_path = ?", (normalized,))
            removed = cur.rowcount > 0
            cur.execute("DELETE FROM sync_checkpoints WHERE folder_path = ?", (normalized,))
            return removed

    # Albums

    def create_album(self, name: str) -> int:
        with self.cursor() as cur:
            cur.execute(
                "INSERT INTO albums (name, created_at) VALUES (?, ?)",
                (name, now_ms()),
            )
            return cur.lastrowid

    def add_media_to_album(self, album_id: int, remote_path: str) -> None:
        with self.cursor() as cur:
            cur.execute("""
                INSERT OR IGNORE INTO album_media (album_id, media_remote_path, added_at)
                VALUES (?, ?, ?)
            """, (album_id, remote_path, now_ms()))

    def get_album_media(self, album_id: int) -> list[str]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT media_remote_path FROM album_media
                WHERE album_id = ?
                ORDER BY added_at, media_remote_path
            """, (album_id,))
            return [row["media_remote_path"] for row in cur.fetchall()]

    # Upload queue

    def enqueue_upload_if_absent(self, entry: UploadQueueEntry) -> bool:
        """Insert a queue row unless a pending, running or failed one exists for the key and operation."""
        now = now_ms()
        placeholders = ",".join("?" for _ in BLOCKING_UPLOAD_STATUSES)
        with self.cursor() as cur:
            cur.execute(f"""
                INSERT INTO upload_queue (
                    stable_key, operation, local_uri, mime_type, size, capture_timestamp,
                    target_remote_folder, target_file_name, status, retry_count,
                    last_error, last_attempt_at, next_attempt_at, resolved_remote_path,
                    created_at, updated_at
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', 0, NULL, 0, 0, ?, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM upload_queue
                    WHERE stable_key = ? AND operation = ? AND status IN ({placeholders})
                )
            """, (
                entry.stable_key, entry.operation.value, entry.local_uri, entry.mime_type,
                entry.size, entry.capture_timestamp, entry.target_remote_folder,
                entry.target_file_name, entry.resolved_remote_path,
                entry.created_at or now, now,
                entry.stable_key, entry.operation.value, *BLOCKING_UPLOAD_STATUSES,
            ))
            return cur.rowcount > 0

    def get_upload(self, entry_id: int) -> Optional[UploadQueueEntry]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM upload_queue WHERE id = ?", (entry_id,))
            row = cur.fetchone()
            return UploadQueueEntry.from_row(dict(row)) if row else None

    def get_uploads(self, status: Optional[UploadStatus] = None) -> list[UploadQueueEntry]:
        with self.cursor() as cur:
            if status is None:
                cur.execute("SELECT * FROM upload_queue ORDER BY created_at, id")
            else:
                cur.execute(
                    "SELECT * FROM upload_queue WHERE status = ? ORDER BY created_at, id",
                    (status.value,),
                )
            return [UploadQueueEntry.from_row(dict(row)) for row in cur.fetchall()]

    def get_ready_uploads(self, now: int, limit: int) -> list[UploadQueueEntry]:
        """Pending rows whose backoff has elapsed, most-ready first."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM upload_queue
                WHERE status = 'PENDING' AND next_attempt_at <= ?
                ORDER BY next_attempt_at ASC, created_at ASC, id ASC
                LIMIT ?
            """, (now, limit))
            return [UploadQueueEntry.from_row(dict(row)) for row in cur.fetchall()]

    def mark_upload_uploading(self, entry_id: int, now: int) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE upload_queue SET status = 'UPLOADING', last_attempt_at = ?, updated_at = ?
                WHERE id = ?
            """, (now, now, entry_id))

    def mark_upload_done(self, entry_id: int, resolved_remote_path: Optional[str], now: int) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE upload_queue SET
                    status = 'DONE',
                    resolved_remote_path = COALESCE(?, resolved_remote_path),
                    last_error = NULL,
                    next_attempt_at = 0,
                    updated_at = ?
                WHERE id = ?
            """, (resolved_remote_path, now, entry_id))

    def mark_upload_retry(self, entry_id: int, retry_count: int, next_attempt_at: int, error: str, now: int) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE upload_queue SET
                    status = 'PENDING',
                    retry_count = ?,
                    next_attempt_at = ?,
                    last_error = ?,
                    updated_at = ?
                WHERE id = ?
            """, (retry_count, next_attempt_at, error, now, entry_id))

    def mark_upload_failed(self, entry_id: int, retry_count: int, error: str, now: int) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE upload_queue SET
                    status = 'FAILED',
                    retry_count = ?,
                    next_attempt_at = 0,
                    last_error = ?,
                    updated_at = ?
                WHERE id = ?
            """, (retry_count, error, now, entry_id))

    def requeue_interrupted_uploads(self, now: int) -> int:
        """Rows left UPLOADING by a dead process go back to PENDING."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE upload_queue SET status = 'PENDING', next_attempt_at = 0, updated_at = ?
                WHERE status = 'UPLOADING'
            """, (now,))
            return cur.rowcount

    def requeue_failed_uploads(self, now: int) -> int:
        """Manual retry of terminal failures with a fresh retry budget."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE upload_queue SET
                    status = 'PENDING',
                    retry_count = 0,
                    next_attempt_at = 0,
                    last_error = NULL,
                    updated_at = ?
                WHERE status = 'FAILED'
                  AND NOT EXISTS (
                      SELECT 1 FROM upload_queue other
                      WHERE other.stable_key = upload_queue.stable_key
                        AND other.operation = upload_queue.operation
                        AND other.status IN ('PENDING', 'UPLOADING')
                  )
            """, (now,))
            return cur.rowcount

    def prune_done_uploads(self, older_than: int) -> int:
        with self.cursor() as cur:
            cur.execute(
                "DELETE FROM upload_queue WHERE status = 'DONE' AND updated_at < ?",
                (older_than,),
            )
            return cur.rowcount

    def count_uploads_by_status(self, status: UploadStatus) -> int:
        with self.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) AS count FROM upload_queue WHERE status = ?",
                (status.value,),
            )
            return cur.fetchone()["count"]

    def get_earliest_pending_attempt(self, after: int) -> Optional[int]:
        """Earliest backoff deadline still in the future."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT MIN(next_attempt_at) AS next_at FROM upload_queue
                WHERE status = 'PENDING' AND next_attempt_at > ?
            """, (after,))
            row = cur.fetchone()
            return row["next_at"] if row and row["next_at"] is not None else None

    # Uploaded media registry

    def get_registry_entry(self, stable_key: str) -> Optional[UploadedMediaRecord]:
        with self.cursor() as cur:
            cur.execute("SELECT * FROM uploaded_media_registry WHERE stable_key = ?", (stable_key,))
            row = cur.fetchone()
            return UploadedMediaRecord.from_row(dict(row)) if row else None

    def get_active_registry_entries(self) -> list[UploadedMediaRecord]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT * FROM uploaded_media_registry
                WHERE deleted_remotely_at IS NULL
                ORDER BY uploaded_at
            """)
            return [UploadedMediaRecord.from_row(dict(row)) for row in cur.fetchall()]

    def upsert_registry_entry(self, record: UploadedMediaRecord) -> None:
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO uploaded_media_registry (
                    stable_key, remote_path, last_known_local_uri, size, capture_timestamp,
                    last_seen_at, uploaded_at, deleted_remotely_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                ON CONFLICT(stable_key) DO UPDATE SET
                    remote_path = excluded.remote_path,
                    last_known_local_uri = excluded.last_known_local_uri,
                    size = excluded.size,
                    capture_timestamp = excluded.capture_timestamp,
                    last_seen_at = excluded.last_seen_at,
                    uploaded_at = excluded.uploaded_at,
                    deleted_remotely_at = NULL
            """, (
                record.stable_key, record.remote_path, record.last_known_local_uri,
                record.size, record.capture_timestamp, record.last_seen_at,
                record.uploaded_at,
            ))

    def mark_registry_seen(self, seen: dict[str, str], now: int) -> int:
        """Touch last_seen_at and last_known_local_uri for existing registry rows."""
        if not seen:
            return 0
        with self.cursor() as cur:
            cur.executemany("""
                UPDATE uploaded_media_registry SET last_seen_at = ?, last_known_local_uri = ?
                WHERE stable_key = ?
            """, [(now, uri, key) for key, uri in seen.items()])
            return cur.rowcount

    def remote_path_claimed(self, remote_path: str, excluding_key: str) -> bool:
        """
        True when another stable key still owns remote_path: an active registry
        row, or an upload that is queued or in flight for that path.
        """
        with self.cursor() as cur:
            cur.execute("""
                SELECT 1 FROM uploaded_media_registry
                WHERE remote_path = ? AND stable_key != ? AND deleted_remotely_at IS NULL
                UNION ALL
                SELECT 1 FROM upload_queue
                WHERE operation = 'UPLOAD'
                  AND status IN ('PENDING', 'UPLOADING')
                  AND stable_key != ?
                  AND COALESCE(
                      resolved_remote_path,
                      CASE WHEN target_remote_folder = '/' THEN '/' || target_file_name
                           ELSE target_remote_folder || '/' || target_file_name END
                  ) = ?
                LIMIT 1
            """, (remote_path, excluding_key, excluding_key, remote_path))
            return cur.fetchone() is not None

    def delete_registry_entry(self, stable_key: str) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM uploaded_media_registry WHERE stable_key = ?", (stable_key,))

    def mark_registry_deleted(self, stable_key: str, now: int) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE uploaded_media_registry SET deleted_remotely_at = ?
                WHERE stable_key = ?
            """, (now, stable_key))

    # Metadata

    def get_metadata(self, key: str) -> Optional[str]:
        with self.cursor() as cur:
            cur.execute("SELECT value FROM metadata WHERE key = ?", (key,))
            row = cur.fetchone()
            return row["value"] if row else None

    def set_metadata(self, key: str, value: str) -> None:
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO metadata (key, value)
                VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, (key, value))

    def get_stats(self) -> dict:
        """Get database statistics."""
        with self.cursor() as cur:
            cur.execute("SELECT COUNT(*) as count FROM media_items")
            media_count = cur.fetchone()["count"]

            cur.execute("""
                SELECT thumbnail_status, COUNT(*) as count FROM media_items
                GROUP BY thumbnail_status
            """)
            thumbnails = {row["thumbnail_status"]: row["count"] for row in cur.fetchall()}

            cur.execute("SELECT status, COUNT(*) as count FROM upload_queue GROUP BY status")
            uploads = {row["status"]: row["count"] for row in cur.fetchall()}

            cur.execute("SELECT COUNT(*) as count FROM selected_folders")
            folder_count = cur.fetchone()["count"]

            cur.execute("SELECT value FROM metadata WHERE key = 'last_indexed'")
            row = cur.fetchone()
            last_indexed = row["value"] if row else None

        return {
            "media_count": media_count,
            "selected_folder_count": folder_count,
            "thumbnails": {status.value: thumbnails.get(status.value, 0) for status in ThumbnailStatus},
            "uploads": {status.value: uploads.get(status.value, 0) for status in UploadStatus},
            "last_indexed": last_indexed,
        }
