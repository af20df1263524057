"""
Remote path helpers.
Normalization, folder aliasing and backup target resolution for WebDAV paths.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from davsync.models import UploadStructure

_REPEATED_SLASHES = re.compile(r"/+")

# Upload retry schedule by attempt number (seconds)
RETRY_DELAYS_SECONDS = (30, 120, 300)


def normalize_remote_path(path: Optional[str]) -> str:
    """Trim, force a leading slash, collapse repeated slashes, drop the trailing slash."""
    trimmed = (path or "").strip()
    if not trimmed:
        return "/"
    with_leading = trimmed if trimmed.startswith("/") else f"/{trimmed}"
    collapsed = _REPEATED_SLASHES.sub("/", with_leading)
    stripped = collapsed.rstrip("/")
    return stripped or "/"


def folder_path_aliases(folder: str) -> set[str]:
    """Both spellings a folder may have been stored under."""
    normalized = normalize_remote_path(folder)
    if normalized == "/":
        return {"/"}
    return {normalized, f"{normalized}/"}


def folder_prefix_like(folder: str) -> Optional[str]:
    """SQL LIKE pattern matching paths strictly below a folder, or None for the root."""
    normalized = normalize_remote_path(folder)
    if normalized == "/":
        return None
    escaped = normalized.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}/%"


def is_under_folder(path: str, folder: str) -> bool:
    normalized_folder = normalize_remote_path(folder)
    normalized_path = normalize_remote_path(path)
    if normalized_folder == "/":
        return True
    return normalized_path == normalized_folder or normalized_path.startswith(f"{normalized_folder}/")


def build_remote_file_path(folder: str, file_name: str) -> str:
    name = (file_name or "").strip().strip("/") or "unnamed"
    base = normalize_remote_path(folder)
    if base == "/":
        return f"/{name}"
    return f"{base}/{name}"


def parent_remote_folder(path: str) -> str:
    normalized = normalize_remote_path(path)
    if normalized == "/":
        return "/"
    parent = normalized.rsplit("/", 1)[0]
    return parent or "/"


def remote_file_name(path: str) -> str:
    return normalize_remote_path(path).rsplit("/", 1)[-1]


def resolve_target_remote_folder(
    backup_root: str,
    structure: UploadStructure,
    capture_timestamp_ms: int,
) -> str:
    """Target folder for an upload: the root itself, or root/YYYY/MM by capture time."""
    root = normalize_remote_path(backup_root)
    if structure == UploadStructure.FLAT_FOLDER:
        return root
    if capture_timestamp_ms and capture_timestamp_ms > 0:
        moment = datetime.fromtimestamp(capture_timestamp_ms / 1000, tz=timezone.utc)
    else:
        moment = datetime.now(timezone.utc)
    return build_remote_file_path(build_remote_file_path(root, f"{moment.year:04d}"), f"{moment.month:02d}")


def folder_chain(path: str) -> list[str]:
    """Every ancestor folder of path (inclusive), shallowest first."""
    normalized = normalize_remote_path(path)
    if normalized == "/":
        return []
    parts = normalized.strip("/").split("/")
    return ["/" + "/".join(parts[:i]) for i in range(1, len(parts) + 1)]


def compute_retry_delay_seconds(attempt: int) -> int:
    """Backoff delay for the given 1-based attempt number."""
    if attempt <= 1:
        return RETRY_DELAYS_SECONDS[0]
    if attempt == 2:
        return RETRY_DELAYS_SECONDS[1]
    return RETRY_DELAYS_SECONDS[2]

