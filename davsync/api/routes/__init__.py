"""
Route modules for the davsync API.

Each module defines a FastAPI APIRouter for a specific domain.
All routers are collected in ``all_routers`` for easy inclusion.
"""

from davsync.api.routes.system import router as system_router
from davsync.api.routes.sync import router as sync_router
from davsync.api.routes.backup import router as backup_router
from davsync.api.routes.folders import router as folders_router
from davsync.api.routes.media import router as media_router

all_routers = [
    system_router,
    sync_router,
    backup_router,
    folders_router,
    media_router,
]

__all__ = ["all_routers"]
