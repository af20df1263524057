"""
Local media source for davsync.
Enumerates photos and videos under the local library roots and derives
stable identity keys for upload deduplication.
"""

import hashlib
import logging
import mimetypes
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError

from davsync.models import LocalMediaItem, MediaKind
from davsync.webdav import parse_capture_timestamp

logger = logging.getLogger(__name__)

EXIF_IFD = 0x8769
EXIF_DATETIME_ORIGINAL = 0x9003
EXIF_DATETIME = 0x0132


class LocalSourceUnavailable(Exception):
    """None of the configured library roots can be read."""


def compute_stable_key(root: str, relative_name: str, size: int, capture_ms: int, modified_ms: int) -> str:
    """Identity of a local media item across scans."""
    raw = f"{root}|{relative_name}|{size}|{capture_ms}|{modified_ms}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def read_exif_capture(path: Path) -> Optional[int]:
    """DateTimeOriginal (or DateTime) from EXIF, as local-time epoch ms."""
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            value = exif.get_ifd(EXIF_IFD).get(EXIF_DATETIME_ORIGINAL) or exif.get(EXIF_DATETIME)
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    if not value:
        return None
    try:
        moment = datetime.strptime(str(value).strip("\x00 "), "%Y:%m:%d %H:%M:%S")
    except ValueError:
        return None
    return int(moment.timestamp() * 1000)


class LocalMediaSource:
    """Reads the local media library from one or more directory roots."""

    def __init__(self, read_exif: bool = True):
        self.read_exif = read_exif

    def scan(self, roots: Iterable[Path], kinds: set) -> list[LocalMediaItem]:
        """
        Enumerate media files of the requested kinds.

        Raises:
            LocalSourceUnavailable: no root exists or is readable
        """
        readable = [Path(root) for root in roots if Path(root).is_dir() and os.access(root, os.R_OK)]
        if not readable:
            raise LocalSourceUnavailable(f"No readable library root among {list(roots)}")

        items = []
        for root in readable:
            for path in sorted(self._walk(root)):
                item = self.describe(root, path)
                if item is not None and item.kind in kinds:
                    items.append(item)
        logger.info(f"Local scan found {len(items)} media item(s) under {len(readable)} root(s)")
        return items

    def _walk(self, root: Path) -> Iterable[Path]:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for name in filenames:
                if not name.startswith("."):
                    yield Path(dirpath) / name

    def describe(self, root: Path, path: Path) -> Optional[LocalMediaItem]:
        mime_type = mimetypes.guess_type(path.name)[0] or ""
        kind = MediaKind.from_mime_or_name(mime_type, path.name)
        if kind == MediaKind.UNKNOWN:
            return None
        try:
            stat = path.stat()
        except OSError as e:
            logger.warning(f"Cannot stat {path}: {e}")
            return None

        modified_ms = int(stat.st_mtime * 1000)
        capture_ms = parse_capture_timestamp(path.name)
        if capture_ms is None and self.read_exif and kind == MediaKind.IMAGE:
            capture_ms = read_exif_capture(path)
        if capture_ms is None:
            capture_ms = modified_ms

        relative = path.relative_to(root).as_posix()
        return LocalMediaItem(
            stable_key=compute_stable_key(str(root), relative, stat.st_size, capture_ms, modified_ms),
            local_uri=str(path),
            file_name=path.name,
            mime_type=mime_type or "application/octet-stream",
            size=stat.st_size,
            capture_timestamp=capture_ms,
            kind=kind,
        )
