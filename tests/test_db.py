"""
Unit tests for the database module.
"""

import pytest

from davsync.db import Database
from davsync.models import (
    CheckpointStatus,
    SyncCheckpoint,
    ThumbnailStatus,
    ThumbnailUpdate,
    UploadedMediaRecord,
    UploadOperation,
    UploadQueueEntry,
    UploadStatus,
)

from conftest import make_media_item


def queue_entry(key: str = "key-1", operation: UploadOperation = UploadOperation.UPLOAD, created_at: int = 1000) -> UploadQueueEntry:
    return UploadQueueEntry(
        stable_key=key,
        operation=operation,
        target_remote_folder="/Backup",
        target_file_name=f"{key}.jpg",
        local_uri=f"/library/{key}.jpg",
        mime_type="image/jpeg",
        size=10,
        created_at=created_at,
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_creates_tables(self, temp_db: Database):
        """Database should create all required tables."""
        with temp_db.cursor() as cur:
            cur.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row["name"] for row in cur.fetchall()}

        assert {
            "media_items",
            "sync_checkpoints",
            "selected_folders",
            "albums",
            "album_media",
            "upload_queue",
            "uploaded_media_registry",
            "metadata",
        } <= tables

    def test_initialize_is_idempotent(self, temp_db: Database):
        """Running initialize twice should not fail."""
        temp_db.initialize()
        assert temp_db.get_stats()["media_count"] == 0


class TestMediaCatalog:
    """Tests for catalog row operations."""

    def test_upsert_and_get(self, temp_db: Database):
        item = make_media_item("/Photos/a.jpg", capture_timestamp=5000)
        temp_db.upsert_media_items([item])

        stored = temp_db.get_media_item("/Photos/a.jpg")
        assert stored == item
        assert stored.timeline_sort_key == 5000

    def test_upsert_updates_existing(self, temp_db: Database):
        temp_db.upsert_media_items([make_media_item("/Photos/a.jpg", etag="v1")])
        temp_db.upsert_media_items([make_media_item("/Photos/a.jpg", etag="v2")])

        assert temp_db.get_media_item("/Photos/a.jpg").etag == "v2"
        assert temp_db.get_stats()["media_count"] == 1

    def test_under_folder_matches_aliases(self, temp_db: Database):
        """Rows stored with a trailing-slash folder are still found."""
        item = make_media_item("/Photos/a.jpg")
        item.folder_path = "/Photos/"
        temp_db.upsert_media_items([item])

        assert [i.remote_path for i in temp_db.get_media_under_folder("/Photos")] == ["/Photos/a.jpg"]

    def test_under_folder_nested_flag(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/Photos/a.jpg"),
            make_media_item("/Photos/2024/b.jpg"),
            make_media_item("/Photos2/c.jpg"),
        ])

        nested = {i.remote_path for i in temp_db.get_media_under_folder("/Photos")}
        direct = {i.remote_path for i in temp_db.get_media_under_folder("/Photos", include_nested=False)}

        assert nested == {"/Photos/a.jpg", "/Photos/2024/b.jpg"}
        assert direct == {"/Photos/a.jpg"}

    def test_under_folder_escapes_like(self, temp_db: Database):
        """An underscore in the folder name is literal."""
        temp_db.upsert_media_items([
            make_media_item("/a_b/x.jpg"),
            make_media_item("/axb/y.jpg"),
        ])
        found = {i.remote_path for i in temp_db.get_media_under_folder("/a_b")}
        assert found == {"/a_b/x.jpg"}

    def test_delete_returns_rows(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/P/a.jpg", thumbnail_path="/cache/a.jpg", status=ThumbnailStatus.READY),
            make_media_item("/P/b.jpg"),
        ])

        deleted = temp_db.delete_media_items(["/P/a.jpg", "/P/missing.jpg"])

        assert [i.remote_path for i in deleted] == ["/P/a.jpg"]
        assert deleted[0].thumbnail_path == "/cache/a.jpg"
        assert temp_db.get_media_item("/P/a.jpg") is None
        assert temp_db.get_media_item("/P/b.jpg") is not None

    def test_list_media_newest_first(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/P/old.jpg", last_modified=1000),
            make_media_item("/P/new.jpg", last_modified=3000),
            make_media_item("/Q/mid.jpg", last_modified=2000),
        ])

        assert [i.file_name for i in temp_db.list_media()] == ["new.jpg", "mid.jpg", "old.jpg"]
        assert [i.file_name for i in temp_db.list_media(folder="/P")] == ["new.jpg", "old.jpg"]
        assert [i.file_name for i in temp_db.list_media(limit=1, offset=1)] == ["mid.jpg"]


class TestThumbnailState:
    """Tests for thumbnail bookkeeping queries."""

    def test_candidates_pending_first(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/P/failed.jpg", status=ThumbnailStatus.FAILED, retry_count=1, last_modified=9000),
            make_media_item("/P/pending.jpg", last_modified=1000),
            make_media_item("/P/exhausted.jpg", status=ThumbnailStatus.FAILED, retry_count=3),
            make_media_item("/P/ready.jpg", status=ThumbnailStatus.READY),
        ])

        candidates = [i.file_name for i in temp_db.get_thumbnail_candidates(10, max_retries=3)]

        assert candidates == ["pending.jpg", "failed.jpg"]

    def test_updates_increment_and_reset_retries(self, temp_db: Database):
        temp_db.upsert_media_items([make_media_item("/P/a.jpg", status=ThumbnailStatus.FAILED, retry_count=1)])

        temp_db.apply_thumbnail_updates([
            ThumbnailUpdate("/P/a.jpg", ThumbnailStatus.FAILED, error="http_500", increment_retry=True)
        ])
        failed = temp_db.get_media_item("/P/a.jpg")
        assert failed.thumbnail_retry_count == 2
        assert failed.thumbnail_last_error == "http_500"

        temp_db.apply_thumbnail_updates([
            ThumbnailUpdate("/P/a.jpg", ThumbnailStatus.READY, thumbnail_path="/cache/a.jpg")
        ])
        ready = temp_db.get_media_item("/P/a.jpg")
        assert ready.thumbnail_status == ThumbnailStatus.READY
        assert ready.thumbnail_retry_count == 0
        assert ready.thumbnail_last_error is None

    def test_update_for_other_version_is_rejected(self, temp_db: Database):
        temp_db.upsert_media_items([make_media_item("/P/a.jpg", etag="v2", size=200)])
        stale = ThumbnailUpdate(
            "/P/a.jpg", ThumbnailStatus.READY, thumbnail_path="/cache/a.jpg", etag="v1", size=100
        )
        current = ThumbnailUpdate(
            "/P/a.jpg", ThumbnailStatus.READY, thumbnail_path="/cache/a.jpg", etag="v2", size=200
        )

        assert temp_db.apply_thumbnail_updates([stale]) == [stale]
        assert temp_db.get_media_item("/P/a.jpg").thumbnail_status == ThumbnailStatus.PENDING
        assert temp_db.apply_thumbnail_updates([current]) == []
        assert temp_db.get_media_item("/P/a.jpg").thumbnail_status == ThumbnailStatus.READY

    def test_pending_and_exhausted_counts(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/P/a.jpg"),
            make_media_item("/P/b.jpg", status=ThumbnailStatus.FAILED, retry_count=1),
            make_media_item("/P/c.jpg", status=ThumbnailStatus.FAILED, retry_count=3, error="http_500"),
            make_media_item("/P/d.jpg", status=ThumbnailStatus.FAILED, retry_count=4, error="http_500"),
            make_media_item("/P/e.jpg", status=ThumbnailStatus.FAILED, retry_count=3, error="timeout"),
        ])

        assert temp_db.count_pending_thumbnails(3) == 2
        assert temp_db.count_exhausted_thumbnails(3) == 3
        assert temp_db.get_dominant_exhausted_error(3) == ("http_500", 2)

    def test_requeue_exhausted_by_error_code(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/P/c.jpg", status=ThumbnailStatus.FAILED, retry_count=3, error="http_500"),
            make_media_item("/P/e.jpg", status=ThumbnailStatus.FAILED, retry_count=3, error="timeout"),
        ])

        assert temp_db.requeue_exhausted_thumbnails(3, error_code="timeout") == 1
        requeued = temp_db.get_media_item("/P/e.jpg")
        assert requeued.thumbnail_status == ThumbnailStatus.PENDING
        assert requeued.thumbnail_retry_count == 0
        assert temp_db.get_media_item("/P/c.jpg").thumbnail_status == ThumbnailStatus.FAILED

    def test_requeue_skipped_videos_only(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/P/clip.mov", status=ThumbnailStatus.SKIPPED, mime_type="application/octet-stream"),
            make_media_item("/P/clip2.bin", status=ThumbnailStatus.SKIPPED, mime_type="video/mp4"),
            make_media_item("/P/raw.dng", status=ThumbnailStatus.SKIPPED),
        ])

        assert temp_db.requeue_skipped_videos() == 2
        assert temp_db.get_media_item("/P/raw.dng").thumbnail_status == ThumbnailStatus.SKIPPED

    def test_reset_to_pending_clears_path(self, temp_db: Database):
        temp_db.upsert_media_items([
            make_media_item("/P/a.jpg", status=ThumbnailStatus.READY, thumbnail_path="/cache/a.jpg")
        ])
        assert temp_db.get_ready_thumbnail_refs() == [("/P/a.jpg", "/cache/a.jpg")]

        temp_db.reset_thumbnails_to_pending(["/P/a.jpg"])

        item = temp_db.get_media_item("/P/a.jpg")
        assert item.thumbnail_status == ThumbnailStatus.PENDING
        assert item.thumbnail_path is None


class TestFoldersAndCheckpoints:
    """Tests for selected folders and sync checkpoints."""

    def test_add_normalizes_and_names(self, temp_db: Database):
        folder = temp_db.add_selected_folder("Photos/2024/")
        assert folder.remote_path == "/Photos/2024"
        assert folder.display_name == "2024"
        assert [f.remote_path for f in temp_db.get_selected_folders()] == ["/Photos/2024"]

    def test_remove_drops_checkpoint(self, temp_db: Database):
        temp_db.add_selected_folder("/Photos")
        temp_db.upsert_checkpoint(SyncCheckpoint("/Photos", 1000, CheckpointStatus.COMPLETED))

        assert temp_db.remove_selected_folder("/Photos/") is True
        assert temp_db.get_checkpoints() == []
        assert temp_db.remove_selected_folder("/Photos") is False

    def test_checkpoint_keeps_last_etag(self, temp_db: Database):
        temp_db.upsert_checkpoint(SyncCheckpoint("/Photos", 1000, CheckpointStatus.COMPLETED, last_etag="e1"))
        temp_db.upsert_checkpoint(SyncCheckpoint(
            "/Photos", 2000, CheckpointStatus.FAILED, last_error_code="timeout"
        ))

        checkpoint = temp_db.get_checkpoints()[0]
        assert checkpoint["status"] == "FAILED"
        assert checkpoint["last_etag"] == "e1"
        assert checkpoint["last_error_code"] == "timeout"


class TestAlbums:
    """Album membership follows catalog deletes."""

    def test_membership_cascades(self, temp_db: Database):
        temp_db.upsert_media_items([make_media_item("/P/a.jpg"), make_media_item("/P/b.jpg")])
        album_id = temp_db.create_album("Holiday")
        temp_db.add_media_to_album(album_id, "/P/a.jpg")
        temp_db.add_media_to_album(album_id, "/P/b.jpg")

        temp_db.delete_media_items(["/P/a.jpg"])

        assert temp_db.get_album_media(album_id) == ["/P/b.jpg"]


class TestUploadQueue:
    """Tests for the durable upload queue."""

    def test_enqueue_is_unique_per_key_and_operation(self, temp_db: Database):
        assert temp_db.enqueue_upload_if_absent(queue_entry()) is True
        assert temp_db.enqueue_upload_if_absent(queue_entry()) is False
        assert temp_db.enqueue_upload_if_absent(queue_entry(operation=UploadOperation.DELETE)) is True
        assert len(temp_db.get_uploads()) == 2

    def test_done_entry_allows_new_one(self, temp_db: Database):
        temp_db.enqueue_upload_if_absent(queue_entry())
        entry = temp_db.get_uploads()[0]
        temp_db.mark_upload_done(entry.id, "/Backup/key-1.jpg", 2000)

        assert temp_db.enqueue_upload_if_absent(queue_entry()) is True

    def test_failed_entry_blocks_new_one(self, temp_db: Database):
        temp_db.enqueue_upload_if_absent(queue_entry())
        entry = temp_db.get_uploads()[0]
        temp_db.mark_upload_failed(entry.id, 3, "upload_failed", 2000)

        assert temp_db.enqueue_upload_if_absent(queue_entry()) is False

    def test_ready_uploads_respect_backoff(self, temp_db: Database):
        temp_db.enqueue_upload_if_absent(queue_entry("a", created_at=1))
        temp_db.enqueue_upload_if_absent(queue_entry("b", created_at=2))
        first, second = temp_db.get_uploads()
        temp_db.mark_upload_retry(first.id, 1, next_attempt_at=50_000, error="timeout", now=1000)

        assert [e.stable_key for e in temp_db.get_ready_uploads(now=10_000, limit=10)] == ["b"]
        assert [e.stable_key for e in temp_db.get_ready_uploads(now=60_000, limit=10)] == ["b", "a"]
        assert temp_db.get_earliest_pending_attempt(after=10_000) == 50_000
        assert temp_db.get_earliest_pending_attempt(after=60_000) is None

    def test_requeue_interrupted(self, temp_db: Database):
        temp_db.enqueue_upload_if_absent(queue_entry())
        entry = temp_db.get_uploads()[0]
        temp_db.mark_upload_uploading(entry.id, 1000)

        assert temp_db.requeue_interrupted_uploads(2000) == 1
        assert temp_db.get_upload(entry.id).status == UploadStatus.PENDING

    def test_requeue_failed_resets_budget(self, temp_db: Database):
        temp_db.enqueue_upload_if_absent(queue_entry())
        entry = temp_db.get_uploads()[0]
        temp_db.mark_upload_failed(entry.id, 3, "upload_failed", 2000)

        assert temp_db.requeue_failed_uploads(3000) == 1
        requeued = temp_db.get_upload(entry.id)
        assert requeued.status == UploadStatus.PENDING
        assert requeued.retry_count == 0
        assert requeued.last_error is None

    def test_prune_done(self, temp_db: Database):
        temp_db.enqueue_upload_if_absent(queue_entry())
        entry = temp_db.get_uploads()[0]
        temp_db.mark_upload_done(entry.id, None, 1000)

        assert temp_db.prune_done_uploads(older_than=500) == 0
        assert temp_db.prune_done_uploads(older_than=5000) == 1
        assert temp_db.get_uploads() == []

    def test_counts_by_status(self, temp_db: Database):
        temp_db.enqueue_upload_if_absent(queue_entry("a"))
        temp_db.enqueue_upload_if_absent(queue_entry("b"))
        assert temp_db.count_uploads_by_status(UploadStatus.PENDING) == 2
        assert temp_db.get_stats()["uploads"]["PENDING"] == 2


class TestRegistry:
    """Tests for the uploaded media registry."""

    def record(self, key: str = "key-1") -> UploadedMediaRecord:
        return UploadedMediaRecord(
            stable_key=key,
            remote_path=f"/Backup/{key}.jpg",
            size=10,
            capture_timestamp=1000,
            uploaded_at=1000,
            last_seen_at=1000,
            last_known_local_uri=f"/library/{key}.jpg",
        )

    def test_upsert_and_seen(self, temp_db: Database):
        temp_db.upsert_registry_entry(self.record())
        temp_db.mark_registry_seen({"key-1": "/library/moved.jpg"}, 5000)

        entry = temp_db.get_registry_entry("key-1")
        assert entry.last_seen_at == 5000
        assert entry.last_known_local_uri == "/library/moved.jpg"

    def test_deleted_entries_are_inactive(self, temp_db: Database):
        temp_db.upsert_registry_entry(self.record("a"))
        temp_db.upsert_registry_entry(self.record("b"))
        temp_db.mark_registry_deleted("a", 5000)

        assert [r.stable_key for r in temp_db.get_active_registry_entries()] == ["b"]

    def test_reupload_clears_deleted_mark(self, temp_db: Database):
        temp_db.upsert_registry_entry(self.record())
        temp_db.mark_registry_deleted("key-1", 5000)
        temp_db.upsert_registry_entry(self.record())

        assert temp_db.get_registry_entry("key-1").deleted_remotely_at is None


class TestMetadataAndStats:
    """Tests for metadata and statistics."""

    def test_metadata_roundtrip(self, temp_db: Database):
        assert temp_db.get_metadata("missing") is None
        temp_db.set_metadata("k", "v1")
        temp_db.set_metadata("k", "v2")
        assert temp_db.get_metadata("k") == "v2"

    def test_stats_shape(self, temp_db: Database):
        temp_db.upsert_media_items([make_media_item("/P/a.jpg")])
        temp_db.add_selected_folder("/P")
        temp_db.set_metadata("last_indexed", "2024-01-01T00:00:00")

        stats = temp_db.get_stats()

        assert stats["media_count"] == 1
        assert stats["selected_folder_count"] == 1
        assert stats["thumbnails"] == {"PENDING": 1, "READY": 0, "FAILED": 0, "SKIPPED": 0}
        assert set(stats["uploads"]) == {"PENDING", "UPLOADING", "DONE", "FAILED"}
        assert stats["last_indexed"] == "2024-01-01T00:00:00"
