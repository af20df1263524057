"""
Unit tests for the sync_jobs runner.
"""

import logging
import sys
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from davsync.models import ScheduleType, ThumbnailStatus
from davsync.policy import BackupPolicyRepository
from sync_jobs import (
    build_log_handlers,
    main,
    run_all,
    run_detect,
    run_index,
    run_thumbnails,
    run_upload,
    save_sample_policy,
)

from conftest import make_media_item
from fakes import remote_file, unreachable_error


class TestSaveSamplePolicy:
    """Tests for sample policy generation."""

    def test_creates_yaml_file(self, temp_dir: Path):
        output = temp_dir / "policy.yaml"

        save_sample_policy(output)

        assert output.exists()
        policy = BackupPolicyRepository(output).load()
        assert policy.enabled is True
        assert policy.schedule_type == ScheduleType.DAILY_TIME
        assert (policy.daily_hour, policy.daily_minute) == (2, 30)

    def test_creates_parent_directories(self, temp_dir: Path):
        output = temp_dir / "nested" / "dir" / "policy.yaml"
        save_sample_policy(output)
        assert output.exists()


class TestRunIndex:
    """Tests for the index runner."""

    @pytest.mark.asyncio
    async def test_index_success(self, container, temp_db, fake_client):
        temp_db.add_selected_folder("/Photos")
        fake_client.listings["/Photos"] = [remote_file("/Photos/a.jpg")]

        result = await run_index(container)

        assert result["success"] is True
        assert result["synced_count"] == 1
        assert "timestamp" in result

    @pytest.mark.asyncio
    async def test_explicit_folders(self, container, fake_client):
        fake_client.listings["/Other"] = [remote_file("/Other/b.jpg")]

        result = await run_index(container, folders=["/Other"])

        assert result["synced_count"] == 1

    @pytest.mark.asyncio
    async def test_no_session(self, container):
        container.sessions.clear_session()

        result = await run_index(container)

        assert result["success"] is False
        assert result["error"] == "no_session"

    @pytest.mark.asyncio
    async def test_handles_config_error(self, container):
        with patch('sync_jobs.Config') as mock_config:
            mock_config.validate.side_effect = ValueError("THUMBNAIL_SIZE must be positive")

            result = await run_index(container)

        assert result["success"] is False
        assert "error" in result


class TestRunThumbnails:
    """Tests for the thumbnail runner."""

    @pytest.mark.asyncio
    async def test_backfill(self, container, temp_db):
        temp_db.upsert_media_items([make_media_item("/P/a.jpg"), make_media_item("/P/b.jpg")])

        with patch('sync_jobs.Config') as mock_config:
            mock_config.validate = MagicMock()
            result = await run_thumbnails(container, batch_limit=1, max_batches=5)

        assert result["success"] is True
        assert result["fetched_count"] == 2
        assert result["pending_count"] == 0

    @pytest.mark.asyncio
    async def test_requeue_skipped_videos(self, container, temp_db):
        temp_db.upsert_media_items([
            make_media_item(
                "/P/clip.mp4", status=ThumbnailStatus.SKIPPED,
                error="video_frame_unsupported", mime_type="video/mp4",
            ),
        ])

        result = await run_thumbnails(container, requeue_skipped_videos=True)

        assert result["fetched_count"] == 1
        assert temp_db.get_media_item("/P/clip.mp4").thumbnail_status == ThumbnailStatus.READY

    @pytest.mark.asyncio
    async def test_unreachable_is_failure(self, container, temp_db, fake_client):
        temp_db.upsert_media_items([make_media_item("/P/a.jpg")])
        fake_client.previews["/P/a.jpg"] = unreachable_error()

        result = await run_thumbnails(container)

        assert result["success"] is False
        assert result["aborted"] is True


class TestRunBackup:
    """Tests for the detect and upload runners."""

    @pytest.mark.asyncio
    async def test_detect_then_upload(self, container, active_policy, library_root, fake_client):
        (library_root / "a.jpg").write_bytes(b"jpeg-bytes")

        detected = await run_detect(container)
        uploaded = await run_upload(container)

        assert detected["inserted_count"] == 1
        assert uploaded["success"] is True
        assert uploaded["uploaded_count"] == 1
        assert "/Backup/a.jpg" in fake_client.uploaded

    @pytest.mark.asyncio
    async def test_detect_reports_block_reason(self, container):
        result = await run_detect(container)

        assert result["success"] is True
        assert result["reason"] == "backup_disabled"

    @pytest.mark.asyncio
    async def test_run_all(self, container, active_policy, temp_db, library_root, fake_client):
        temp_db.add_selected_folder("/Photos")
        fake_client.listings["/Photos"] = [remote_file("/Photos/a.jpg")]
        (library_root / "b.jpg").write_bytes(b"jpeg-bytes")

        result = await run_all(container)

        assert result["success"] is True
        assert set(result["steps"]) == {"index", "thumbnails", "detect", "upload"}
        assert result["steps"]["upload"]["uploaded_count"] == 1


class TestLogHandlers:
    """Tests for runner log destinations."""

    def test_file_handler_uses_configured_path(self, temp_dir: Path):
        log_path = temp_dir / "logs" / "jobs.log"

        handlers = build_log_handlers(str(log_path))
        try:
            file_handlers = [h for h in handlers if isinstance(h, logging.FileHandler)]
            assert len(file_handlers) == 1
            assert Path(file_handlers[0].baseFilename) == log_path
        finally:
            for handler in handlers:
                handler.close()

    def test_empty_path_logs_to_stdout_only(self):
        handlers = build_log_handlers("")
        assert len(handlers) == 1
        assert not isinstance(handlers[0], logging.FileHandler)


class TestMain:
    """Tests for the command line entry point."""

    def test_sample_policy_command(self, temp_dir: Path):
        output = temp_dir / "sample.yaml"

        with patch.object(sys, "argv", ["sync_jobs.py", "sample-policy", "-o", str(output)]):
            with pytest.raises(SystemExit) as exc:
                main()

        assert exc.value.code == 0
        assert output.exists()

    def test_no_command_prints_help(self):
        with patch.object(sys, "argv", ["sync_jobs.py"]):
            with pytest.raises(SystemExit) as exc:
                main()

        assert exc.value.code == 1
