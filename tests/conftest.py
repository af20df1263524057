"""
Pytest configuration and shared fixtures for davsync tests.
"""

import tempfile
import shutil
from pathlib import Path
from typing import Generator

import pytest

from davsync.container import Container
from davsync.db import Database
from davsync.local_media import LocalMediaSource
from davsync.models import BackupPolicy, MediaItem, ThumbnailStatus, UploadStructure
from davsync.paths import parent_remote_folder
from davsync.policy import BackupPolicyRepository
from davsync.session import SessionRepository
from davsync.thumbnail_cache import ThumbnailCache

from fakes import FakeClientFactory, FakeWebDavClient


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def temp_db(temp_dir: Path) -> Generator[Database, None, None]:
    """Create a temporary database for tests."""
    db_path = temp_dir / "test.db"
    database = Database(db_path)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def thumbnail_cache(temp_dir: Path) -> ThumbnailCache:
    """Thumbnail cache directory inside the temp dir."""
    cache = ThumbnailCache(temp_dir / "thumbnails")
    cache.ensure()
    return cache


@pytest.fixture
def policy_repo(temp_dir: Path) -> BackupPolicyRepository:
    """Policy repository backed by a temp YAML file (defaults until saved)."""
    return BackupPolicyRepository(temp_dir / "backup_policy.yaml")


@pytest.fixture
def active_policy(policy_repo: BackupPolicyRepository) -> BackupPolicy:
    """An enabled backup policy uploading flat into /Backup."""
    policy = BackupPolicy(
        enabled=True,
        backup_root="/Backup",
        backup_root_selected=True,
        upload_structure=UploadStructure.FLAT_FOLDER,
    )
    policy_repo.save(policy)
    return policy


@pytest.fixture
def sessions() -> SessionRepository:
    """Session repository with a configured account."""
    return SessionRepository("https://cloud.example.com", "alice", "app-password")


@pytest.fixture
def no_sessions() -> SessionRepository:
    """Session repository without credentials."""
    return SessionRepository("", "", "")


@pytest.fixture
def fake_client() -> FakeWebDavClient:
    return FakeWebDavClient()


@pytest.fixture
def library_root(temp_dir: Path) -> Path:
    """Empty local media library."""
    root = temp_dir / "library"
    root.mkdir()
    return root


@pytest.fixture
def container(
    temp_db: Database,
    thumbnail_cache: ThumbnailCache,
    sessions: SessionRepository,
    policy_repo: BackupPolicyRepository,
    library_root: Path,
    fake_client: FakeWebDavClient,
) -> Container:
    """Fully wired container on temp storage with the fake server."""
    return Container(
        database=temp_db,
        thumbnail_cache=thumbnail_cache,
        sessions=sessions,
        policies=policy_repo,
        local_source=LocalMediaSource(read_exif=False),
        library_roots=[library_root],
        client_factory=FakeClientFactory(fake_client),
        watch_local_library=False,
    )


def make_media_item(
    remote_path: str,
    status: ThumbnailStatus = ThumbnailStatus.PENDING,
    retry_count: int = 0,
    error: str = None,
    thumbnail_path: str = None,
    last_modified: int = 1_700_000_000_000,
    capture_timestamp: int = None,
    mime_type: str = "image/jpeg",
    size: int = 100,
    etag: str = "etag-1",
) -> MediaItem:
    """Catalog row with sensible defaults."""
    return MediaItem(
        remote_path=remote_path,
        file_name=remote_path.rsplit("/", 1)[-1],
        mime_type=mime_type,
        size=size,
        last_modified=last_modified,
        etag=etag,
        folder_path=parent_remote_folder(remote_path),
        capture_timestamp=capture_timestamp,
        thumbnail_path=thumbnail_path,
        thumbnail_status=status,
        thumbnail_retry_count=retry_count,
        thumbnail_last_error=error,
    )


@pytest.fixture
def media_item_factory():
    """Factory for catalog rows."""
    return make_media_item
