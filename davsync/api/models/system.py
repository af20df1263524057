"""
System-related API models: health and stats.
"""

from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str = "1.0.0"
    session_configured: bool
    watcher_running: bool
    library_roots: list[str] = []
    scheduled_work: list[str] = []


class StatsResponse(BaseModel):
    """Catalog and queue statistics response."""
    media_count: int
    selected_folder_count: int
    thumbnails: dict[str, int]
    uploads: dict[str, int]
    last_indexed: Optional[str]


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
