"""
Backup policy persistence.
Loads and saves the user's BackupPolicy as YAML (or JSON).
"""

import json
import logging
import threading
from dataclasses import asdict, fields
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml

from davsync.config import config
from davsync.models import (
    BackupPolicy,
    DeletePolicy,
    ScheduleType,
    SourceScope,
    SyncMode,
    UploadStructure,
)
from davsync.paths import normalize_remote_path

logger = logging.getLogger(__name__)

_ENUM_FIELDS = {
    "sync_mode": SyncMode,
    "schedule_type": ScheduleType,
    "delete_policy": DeletePolicy,
    "source_scope": SourceScope,
    "upload_structure": UploadStructure,
}


def _dict_to_policy(data: Optional[dict]) -> BackupPolicy:
    """Convert a dictionary to BackupPolicy, ignoring unknown keys."""
    data = data or {}
    known = {f.name for f in fields(BackupPolicy)}
    values = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown backup policy key: {key}")
            continue
        if key in _ENUM_FIELDS and value is not None:
            raw = value.value if isinstance(value, Enum) else str(value)
            value = _ENUM_FIELDS[key](raw.upper())
        values[key] = value
    if "backup_root" in values:
        values["backup_root"] = normalize_remote_path(values["backup_root"])
    if "local_folders" in values:
        values["local_folders"] = [str(folder) for folder in values["local_folders"] or []]
    return BackupPolicy(**values)


def policy_to_dict(policy: BackupPolicy) -> dict:
    data = asdict(policy)
    return {key: value.value if isinstance(value, Enum) else value for key, value in data.items()}


class BackupPolicyRepository:
    """File-backed store for the backup policy."""

    def __init__(self, policy_path: Optional[Path] = None):
        self.policy_path = Path(policy_path or config.BACKUP_POLICY_PATH)
        self._lock = threading.Lock()
        self._cached: Optional[BackupPolicy] = None

    def load(self) -> BackupPolicy:
        """Load the policy, falling back to defaults when the file is missing."""
        with self._lock:
            if self._cached is not None:
                return self._cached
            if not self.policy_path.exists():
                logger.info(f"Backup policy not found at {self.policy_path}, using defaults")
                self._cached = BackupPolicy()
                return self._cached

            content = self.policy_path.read_text(encoding="utf-8")
            if self.policy_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content)
            elif self.policy_path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ValueError(f"Unsupported policy format: {self.policy_path.suffix}")

            self._cached = _dict_to_policy(data)
            return self._cached

    def save(self, policy: BackupPolicy) -> None:
        with self._lock:
            self.policy_path.parent.mkdir(parents=True, exist_ok=True)
            data = policy_to_dict(policy)
            with open(self.policy_path, "w", encoding="utf-8") as f:
                if self.policy_path.suffix == ".json":
                    json.dump(data, f, indent=2)
                else:
                    yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
            self._cached = policy
        logger.info(f"Saved backup policy to {self.policy_path}")

    def update(self, **changes) -> BackupPolicy:
        """Apply field changes and persist. Raises ValueError for unknown fields or values."""
        current = policy_to_dict(self.load())
        unknown = set(changes) - set(current)
        if unknown:
            raise ValueError(f"Unknown backup policy field(s): {', '.join(sorted(unknown))}")
        current.update(changes)
        updated = _dict_to_policy(current)
        if "backup_root" in changes and "backup_root_selected" not in changes:
            updated.backup_root_selected = True
        self.save(updated)
        return updated
