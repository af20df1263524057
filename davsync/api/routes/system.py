"""
System routes: /health, /stats
"""

from fastapi import APIRouter

from davsync.api.models.system import HealthResponse, StatsResponse
from davsync.services.system_service import system_service

router = APIRouter(tags=["System"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.
    Returns whether a session is configured and the watcher is running.
    """
    return system_service.get_health()


@router.get("/stats", response_model=StatsResponse)
async def get_stats():
    """
    Get catalog statistics.
    Returns media counts, thumbnail and upload queue breakdowns, and last indexed time.
    """
    return system_service.get_stats()
