"""
Sync service: remote library indexing and thumbnail actions exposed to the API layer.
"""

import logging
from dataclasses import asdict
from typing import Optional

from davsync.api.models.sync import (
    SyncActionResponse,
    SyncDiagnosticsResponse,
    SyncStatusResponse,
    WorkInfoModel,
)
from davsync.container import get_container
from davsync.jobs import ALL_WORK_NAMES
from davsync.scheduler import WorkInfo

logger = logging.getLogger(__name__)

SYNC_MODES = ("full", "now", "combined")


def to_work_model(info: Optional[WorkInfo]) -> Optional[WorkInfoModel]:
    if info is None:
        return None
    data = asdict(info)
    data["state"] = info.state.value
    data.pop("input", None)
    return WorkInfoModel(**data)


class SyncService:
    """API-level sync operations (delegates to the orchestrator)."""

    @staticmethod
    def _require_session() -> None:
        if get_container().sessions.get_session() is None:
            raise EnvironmentError(
                "No server session. Set DAVSYNC_SERVER_URL, DAVSYNC_LOGIN_NAME and DAVSYNC_APP_PASSWORD."
            )

    def get_status(self) -> SyncStatusResponse:
        status = get_container().orchestrator.sync_status()
        return SyncStatusResponse(**status.to_dict())

    def get_diagnostics(self) -> SyncDiagnosticsResponse:
        container = get_container()
        return SyncDiagnosticsResponse(
            debug_line=container.orchestrator.debug_line(),
            work={name: to_work_model(container.scheduler.latest_info(name)) for name in ALL_WORK_NAMES},
            periodic=container.scheduler.periodic_names(),
            checkpoints=container.db.get_checkpoints(),
        )

    def sync(self, mode: str = "full") -> SyncActionResponse:
        """Start a sync run in the given mode."""
        if mode not in SYNC_MODES:
            raise ValueError(f"Mode must be one of: {', '.join(SYNC_MODES)}")
        self._require_session()
        orchestrator = get_container().orchestrator
        if mode == "full":
            info = orchestrator.schedule_full()
        elif mode == "now":
            info = orchestrator.request_sync_now()
        else:
            info = orchestrator.request_combined_sync_now()
        return SyncActionResponse(status="scheduled", work=to_work_model(info))

    def retry(self) -> SyncActionResponse:
        self._require_session()
        info = get_container().orchestrator.retry()
        return SyncActionResponse(status="scheduled", work=to_work_model(info))

    def cancel(self) -> list[str]:
        return get_container().orchestrator.cancel_all()


# Singleton
sync_service = SyncService()
