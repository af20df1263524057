"""
System service: health checks and stats.
"""

import logging

from davsync.api.models.system import HealthResponse, StatsResponse
from davsync.container import get_container

logger = logging.getLogger(__name__)


class SystemService:
    """Handles system-level operations: health, stats."""

    def get_health(self) -> HealthResponse:
        container = get_container()
        return HealthResponse(
            status="ok",
            session_configured=container.sessions.get_session() is not None,
            watcher_running=container.watcher.is_running,
            library_roots=[str(root) for root in container.library_roots],
            scheduled_work=container.scheduler.periodic_names(),
        )

    def get_stats(self) -> StatsResponse:
        """Return catalog and queue statistics."""
        stats = get_container().db.get_stats()
        return StatsResponse(**stats)


# Singleton
system_service = SystemService()
