"""
Backup service: upload queue status, manual runs and policy editing.
"""

import logging

from davsync.api.models.backup import (
    BackupPolicyModel,
    BackupPolicyUpdate,
    BackupRunResponse,
    BackupStatusResponse,
)
from davsync.container import get_container
from davsync.policy import policy_to_dict

logger = logging.getLogger(__name__)


class BackupService:
    """API-level backup operations."""

    def get_status(self) -> BackupStatusResponse:
        state = get_container().orchestrator.backup_status()
        return BackupStatusResponse(
            state=state.state.value,
            pending_count=state.pending_count,
            failed_count=state.failed_count,
            last_run_finished_at=state.last_run_finished_at,
            last_run_uploaded_count=state.last_run_uploaded_count,
            last_run_skipped_count=state.last_run_skipped_count,
            last_run_deleted_count=state.last_run_deleted_count,
            last_run_failed_count=state.last_run_failed_count,
            last_run_error=state.last_run_error,
        )

    def run_now(self) -> BackupRunResponse:
        container = get_container()
        if container.sessions.get_session() is None:
            raise EnvironmentError("No server session configured")
        info = container.orchestrator.run_backup_now()
        return BackupRunResponse(status="scheduled", work_id=info.id)

    def retry_failed(self) -> int:
        return get_container().orchestrator.retry_failed_uploads()

    def get_policy(self) -> BackupPolicyModel:
        return BackupPolicyModel(**policy_to_dict(get_container().policies.load()))

    def update_policy(self, update: BackupPolicyUpdate) -> BackupPolicyModel:
        """Persist the changed fields and reschedule periodic backup work."""
        changes = update.model_dump(mode="json", exclude_none=True)
        container = get_container()
        policy = container.policies.update(**changes)
        container.orchestrator.apply_backup_scheduling(policy)
        logger.info(f"Backup policy updated: {', '.join(sorted(changes)) or 'no changes'}")
        return BackupPolicyModel(**policy_to_dict(policy))


# Singleton
backup_service = BackupService()
