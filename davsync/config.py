"""
Configuration module for davsync daemon.
Loads settings from environment variables or .env file.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from project root (parent of davsync/ directory)
_project_root = Path(__file__).parent.parent
_env_path = _project_root / ".env"
load_dotenv(_env_path)


def _split_paths(raw: str) -> tuple:
    return tuple(Path(p.strip()).expanduser() for p in raw.split(os.pathsep) if p.strip())


class Config:
    """Application configuration."""

    # Database settings
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", "./davsync.db"))

    # Thumbnail cache directory - the only place thumbnail files are written
    THUMBNAIL_CACHE_DIR: Path = Path(os.getenv("THUMBNAIL_CACHE_DIR", "./thumbnails"))

    # Backup policy (YAML, user editable)
    BACKUP_POLICY_PATH: Path = Path(os.getenv("BACKUP_POLICY_PATH", "./backup_policy.yaml"))

    # Log file for the sync_jobs runner; empty disables file logging
    SYNC_JOBS_LOG_PATH: str = os.getenv("SYNC_JOBS_LOG_PATH", "./sync_jobs.log")

    # Remote server session
    DAVSYNC_SERVER_URL: str = os.getenv("DAVSYNC_SERVER_URL", "")
    DAVSYNC_LOGIN_NAME: str = os.getenv("DAVSYNC_LOGIN_NAME", "")
    DAVSYNC_APP_PASSWORD: str = os.getenv("DAVSYNC_APP_PASSWORD", "")

    # Local media library roots (os.pathsep separated)
    LOCAL_LIBRARY_ROOTS: tuple = _split_paths(os.getenv("LOCAL_LIBRARY_ROOTS", ""))

    # HTTP settings
    HTTP_CONNECT_TIMEOUT: float = float(os.getenv("HTTP_CONNECT_TIMEOUT", "30"))
    HTTP_READ_TIMEOUT: float = float(os.getenv("HTTP_READ_TIMEOUT", "30"))
    HTTP_UPLOAD_TIMEOUT: float = float(os.getenv("HTTP_UPLOAD_TIMEOUT", "300"))
    MAX_LISTING_BYTES: int = int(os.getenv("MAX_LISTING_BYTES", str(64 * 1024 * 1024)))

    # Remote indexer
    INDEXER_CONCURRENCY: int = int(os.getenv("INDEXER_CONCURRENCY", "3"))
    INDEXER_MAX_ATTEMPTS: int = int(os.getenv("INDEXER_MAX_ATTEMPTS", "5"))
    CARRY_FORWARD_CAPTURE_TIMESTAMP: bool = os.getenv(
        "CARRY_FORWARD_CAPTURE_TIMESTAMP", "true"
    ).lower() == "true"
    HEAD_PROBE_SAMPLE_SIZE: int = int(os.getenv("HEAD_PROBE_SAMPLE_SIZE", "8"))
    HEAD_PROBE_INTERVAL_SECONDS: int = int(os.getenv("HEAD_PROBE_INTERVAL_SECONDS", str(6 * 3600)))

    # Thumbnail acquisition
    THUMBNAIL_SIZE: int = int(os.getenv("THUMBNAIL_SIZE", "256"))
    THUMBNAIL_BATCH_LIMIT: int = int(os.getenv("THUMBNAIL_BATCH_LIMIT", "50"))
    THUMBNAIL_CONCURRENCY: int = int(os.getenv("THUMBNAIL_CONCURRENCY", "4"))
    THUMBNAIL_MAX_RETRIES: int = int(os.getenv("THUMBNAIL_MAX_RETRIES", "3"))
    THUMBNAIL_FLUSH_EVERY: int = int(os.getenv("THUMBNAIL_FLUSH_EVERY", "12"))
    THUMBNAIL_FLUSH_SECONDS: float = float(os.getenv("THUMBNAIL_FLUSH_SECONDS", "1.5"))
    THUMBNAIL_MAX_BYTES: int = int(os.getenv("THUMBNAIL_MAX_BYTES", str(1024 * 1024)))
    TRANSCODE_MAX_SOURCE_BYTES: int = int(
        os.getenv("TRANSCODE_MAX_SOURCE_BYTES", str(200 * 1024 * 1024))
    )
    FFMPEG_BINARY: str = os.getenv("FFMPEG_BINARY", "ffmpeg")

    # Upload queue
    UPLOAD_BATCH_LIMIT: int = int(os.getenv("UPLOAD_BATCH_LIMIT", "16"))
    UPLOAD_MAX_RETRY_ATTEMPTS: int = int(os.getenv("UPLOAD_MAX_RETRY_ATTEMPTS", "3"))
    UPLOAD_DEBOUNCE_SECONDS: float = float(os.getenv("UPLOAD_DEBOUNCE_SECONDS", "20"))
    UPLOAD_DONE_RETENTION_DAYS: int = int(os.getenv("UPLOAD_DONE_RETENTION_DAYS", "30"))

    # Scheduling
    AUTO_SYNC_INTERVAL_MINUTES: int = int(os.getenv("AUTO_SYNC_INTERVAL_MINUTES", "15"))
    DETECTOR_INTERVAL_HOURS: float = float(os.getenv("DETECTOR_INTERVAL_HOURS", "1"))

    # File watcher settings
    DEBOUNCE_SECONDS: float = float(os.getenv("DEBOUNCE_SECONDS", "2.0"))
    WATCH_LOCAL_LIBRARY: bool = os.getenv("WATCH_LOCAL_LIBRARY", "true").lower() == "true"

    # API settings
    API_HOST: str = os.getenv("API_HOST", "127.0.0.1")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    DAVSYNC_API_KEY: str = os.getenv("DAVSYNC_API_KEY", "")  # Empty disables API auth
    CORS_ORIGINS: list = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ]

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration values."""
        if not 1 <= cls.INDEXER_CONCURRENCY <= 8:
            raise ValueError(
                f"INDEXER_CONCURRENCY must be between 1 and 8. "
                f"Current value: {cls.INDEXER_CONCURRENCY}"
            )
        if cls.THUMBNAIL_SIZE <= 0:
            raise ValueError(f"THUMBNAIL_SIZE must be positive: {cls.THUMBNAIL_SIZE}")
        if cls.THUMBNAIL_BATCH_LIMIT <= 0 or cls.UPLOAD_BATCH_LIMIT <= 0:
            raise ValueError("Batch limits must be positive")
        if cls.THUMBNAIL_CACHE_DIR.exists() and not cls.THUMBNAIL_CACHE_DIR.is_dir():
            raise ValueError(
                f"THUMBNAIL_CACHE_DIR must be a directory: {cls.THUMBNAIL_CACHE_DIR}"
            )
        for root in cls.LOCAL_LIBRARY_ROOTS:
            if root.exists() and not root.is_dir():
                raise ValueError(f"LOCAL_LIBRARY_ROOTS entry is not a directory: {root}")

    @classmethod
    def has_session(cls) -> bool:
        """Check whether server credentials are configured."""
        return bool(cls.DAVSYNC_SERVER_URL and cls.DAVSYNC_LOGIN_NAME and cls.DAVSYNC_APP_PASSWORD)


# Singleton config instance
config = Config()
