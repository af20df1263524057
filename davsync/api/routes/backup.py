"""
Backup routes: /backup/status, /backup/run, /backup/retry-failed, /backup/policy
"""

import logging

from fastapi import APIRouter, HTTPException

from davsync.api.models.backup import (
    BackupPolicyModel,
    BackupPolicyUpdate,
    BackupRunResponse,
    BackupStatusResponse,
    RetryFailedResponse,
)
from davsync.services.backup_service import backup_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Backup"])


@router.get("/backup/status", response_model=BackupStatusResponse)
async def backup_status():
    """Backup state and the summary of the last run that did real work."""
    return backup_service.get_status()


@router.post("/backup/run", response_model=BackupRunResponse)
async def run_backup():
    """Detect local changes and upload them now, even in manual-only mode."""
    try:
        return backup_service.run_now()
    except EnvironmentError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error("Backup run error: %s", e)
        raise HTTPException(status_code=500, detail=f"Backup failed: {e}")


@router.post("/backup/retry-failed", response_model=RetryFailedResponse)
async def retry_failed_uploads():
    """Give terminally failed uploads a fresh retry budget."""
    return RetryFailedResponse(requeued=backup_service.retry_failed())


@router.get("/backup/policy", response_model=BackupPolicyModel)
async def get_policy():
    return backup_service.get_policy()


@router.put("/backup/policy", response_model=BackupPolicyModel)
async def update_policy(update: BackupPolicyUpdate):
    """
    Update the backup policy.

    Only the fields present in the body change. Setting backup_root marks
    the root as selected. Periodic backup work is rescheduled.
    """
    try:
        return backup_service.update_policy(update)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Policy update error: %s", e)
        raise HTTPException(status_code=500, detail=f"Policy update failed: {e}")
