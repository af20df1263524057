"""
Unit tests for remote path helpers and domain value types.
"""

from datetime import datetime, timezone

import pytest

from davsync.models import BackupPolicy, MediaKind, UploadStructure
from davsync.paths import (
    build_remote_file_path,
    compute_retry_delay_seconds,
    folder_chain,
    folder_path_aliases,
    folder_prefix_like,
    is_under_folder,
    normalize_remote_path,
    parent_remote_folder,
    remote_file_name,
    resolve_target_remote_folder,
)


class TestNormalizeRemotePath:
    """Tests for remote path normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("", "/"),
        (None, "/"),
        ("/", "/"),
        ("///", "/"),
        ("Photos", "/Photos"),
        (" /Photos//2024/ ", "/Photos/2024"),
        ("/Photos/", "/Photos"),
    ])
    def test_normalization(self, raw, expected):
        """Leading slash forced, repeats collapsed, trailing slash dropped."""
        assert normalize_remote_path(raw) == expected

    def test_idempotent(self):
        """Normalizing twice changes nothing."""
        once = normalize_remote_path("a//b/c/")
        assert normalize_remote_path(once) == once


class TestFolderMatching:
    """Tests for folder aliasing and containment."""

    def test_aliases_include_trailing_slash(self):
        assert folder_path_aliases("/Photos/") == {"/Photos", "/Photos/"}

    def test_root_has_single_alias(self):
        assert folder_path_aliases("/") == {"/"}

    def test_prefix_like_escapes_wildcards(self):
        """LIKE metacharacters in folder names are escaped."""
        assert folder_prefix_like("/a_b%") == "/a\\_b\\%/%"

    def test_prefix_like_root_is_none(self):
        assert folder_prefix_like("/") is None

    def test_is_under_folder(self):
        assert is_under_folder("/Photos/2024/a.jpg", "/Photos")
        assert is_under_folder("/Photos", "/Photos/")
        assert not is_under_folder("/Photos2/a.jpg", "/Photos")
        assert is_under_folder("/anything", "/")


class TestRemoteFilePaths:
    """Tests for path building helpers."""

    def test_build_under_root(self):
        assert build_remote_file_path("/", "a.jpg") == "/a.jpg"

    def test_build_strips_slashes(self):
        assert build_remote_file_path("/Backup/", "/a.jpg") == "/Backup/a.jpg"

    def test_build_unnamed(self):
        assert build_remote_file_path("/Backup", "  ") == "/Backup/unnamed"

    def test_parent_and_name(self):
        assert parent_remote_folder("/a.jpg") == "/"
        assert parent_remote_folder("/A/B/c.jpg") == "/A/B"
        assert remote_file_name("/A/B/c.jpg") == "c.jpg"

    def test_folder_chain(self):
        """Every ancestor, shallowest first."""
        assert folder_chain("/A/B/C") == ["/A", "/A/B", "/A/B/C"]
        assert folder_chain("/") == []


class TestResolveTargetRemoteFolder:
    """Tests for backup target folder resolution."""

    def test_flat_folder(self):
        assert resolve_target_remote_folder("/Backup/", UploadStructure.FLAT_FOLDER, 123) == "/Backup"

    def test_year_month_from_capture_time(self):
        """Capture time decides the YYYY/MM folder (UTC)."""
        ts = int(datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc).timestamp() * 1000)
        folder = resolve_target_remote_folder("/Backup", UploadStructure.YEAR_MONTH_FOLDERS, ts)
        assert folder == "/Backup/2024/03"

    def test_year_month_without_capture_uses_now(self):
        now = datetime.now(timezone.utc)
        folder = resolve_target_remote_folder("/Backup", UploadStructure.YEAR_MONTH_FOLDERS, 0)
        assert folder.startswith(f"/Backup/{now.year:04d}/")


class TestRetryDelays:
    """Upload retry schedule."""

    @pytest.mark.parametrize("attempt,expected", [(0, 30), (1, 30), (2, 120), (3, 300), (10, 300)])
    def test_delay_schedule(self, attempt, expected):
        assert compute_retry_delay_seconds(attempt) == expected


class TestMediaKind:
    """Tests for media classification."""

    def test_mime_prefix_wins(self):
        assert MediaKind.from_mime_or_name("video/mp4", "x.jpg") == MediaKind.VIDEO

    def test_extension_fallback(self):
        assert MediaKind.from_mime_or_name("", "IMG_1.HEIC") == MediaKind.IMAGE
        assert MediaKind.from_mime_or_name(None, "clip.mov") == MediaKind.VIDEO

    def test_unknown(self):
        assert MediaKind.from_mime_or_name("text/plain", "notes.txt") == MediaKind.UNKNOWN


class TestBackupPolicyDefaults:
    """BackupPolicy clamps its scheduling fields."""

    def test_interval_clamped(self):
        assert BackupPolicy(schedule_interval_hours=1).schedule_interval_hours == 2
        assert BackupPolicy(schedule_interval_hours=100).schedule_interval_hours == 24

    def test_daily_time_clamped(self):
        policy = BackupPolicy(daily_hour=30, daily_minute=-5)
        assert policy.daily_hour == 23
        assert policy.daily_minute == 0

    def test_media_kinds(self):
        assert BackupPolicy(upload_videos=False).media_kinds == {MediaKind.IMAGE}
        assert BackupPolicy(upload_photos=False, upload_videos=False).media_kinds == set()
