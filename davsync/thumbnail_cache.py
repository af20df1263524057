"""
Thumbnail cache directory.
Deterministic file naming, presence checks and guarded deletion.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional

from davsync.paths import normalize_remote_path

logger = logging.getLogger(__name__)


class ThumbnailCache:
    """The single directory thumbnails are written to."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def file_name_for(remote_path: str) -> str:
        digest = hashlib.sha256(normalize_remote_path(remote_path).encode("utf-8")).hexdigest()
        return f"thumb_{digest[:24]}.jpg"

    def path_for(self, remote_path: str) -> Path:
        return self.root / self.file_name_for(remote_path)

    def contains(self, path: Optional[str]) -> bool:
        """True when path resolves inside the cache directory."""
        if not path:
            return False
        try:
            resolved = Path(path).resolve()
            root = self.root.resolve()
        except OSError:
            return False
        return resolved != root and root in resolved.parents

    def is_present(self, path: Optional[str]) -> bool:
        """A usable thumbnail file inside the cache."""
        if not self.contains(path):
            return False
        try:
            return Path(path).stat().st_size > 0
        except OSError:
            return False

    def size_of(self, path: str) -> int:
        try:
            return Path(path).stat().st_size
        except OSError:
            return 0

    def write_atomic(self, remote_path: str, data: bytes) -> Path:
        """Write bytes to the deterministic name via a temp file and rename."""
        self.ensure()
        target = self.path_for(remote_path)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp_", suffix=".jpg")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def temp_path(self, suffix: str = "") -> Path:
        """Scratch file inside the cache directory for downloads."""
        self.ensure()
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".src_", suffix=suffix)
        os.close(fd)
        return Path(tmp_name)

    def delete_files(self, paths: Iterable[Optional[str]]) -> int:
        """Delete thumbnail files, ignoring anything outside the cache directory."""
        deleted = 0
        for path in paths:
            if not self.contains(path):
                if path:
                    logger.warning(f"Refusing to delete thumbnail outside cache: {path}")
                continue
            try:
                Path(path).unlink()
                deleted += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to delete thumbnail {path}: {e}")
        return deleted
