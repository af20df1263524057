"""
Session store for davsync.
Holds the server URL and app-password credentials used to build WebDAV clients.
"""

import logging
import threading
from typing import Optional
from urllib.parse import urlsplit

from davsync.config import config
from davsync.models import AuthSession

logger = logging.getLogger(__name__)


def normalize_server_url(url: str) -> str:
    """
    Validate and normalize a server base URL.

    Plain http is only accepted for localhost. A bare host gets https.

    Raises:
        ValueError: URL is empty or malformed
    """
    trimmed = (url or "").strip()
    if not trimmed:
        raise ValueError("Server URL must not be empty")
    if "://" not in trimmed:
        trimmed = f"https://{trimmed}"
    parts = urlsplit(trimmed)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"Invalid server URL: {url}")
    if parts.scheme == "http" and parts.hostname not in ("localhost", "127.0.0.1", "::1"):
        raise ValueError("Plain http is only allowed for localhost")
    path = parts.path.rstrip("/")
    for suffix in ("/remote.php/dav", "/remote.php/webdav", "/index.php"):
        if path.endswith(suffix):
            path = path[: -len(suffix)]
    return f"{parts.scheme}://{parts.netloc}{path}"


class SessionRepository:
    """Current authenticated session, seeded from configuration."""

    def __init__(
        self,
        server_url: Optional[str] = None,
        login_name: Optional[str] = None,
        app_password: Optional[str] = None,
    ):
        self._lock = threading.Lock()
        self._session: Optional[AuthSession] = None
        url = server_url if server_url is not None else config.DAVSYNC_SERVER_URL
        login = login_name if login_name is not None else config.DAVSYNC_LOGIN_NAME
        password = app_password if app_password is not None else config.DAVSYNC_APP_PASSWORD
        if url and login and password:
            self._session = AuthSession(normalize_server_url(url), login, password)

    def get_session(self) -> Optional[AuthSession]:
        with self._lock:
            return self._session

    def save_session(self, server_url: str, login_name: str, app_password: str) -> AuthSession:
        if not login_name or not app_password:
            raise ValueError("Login name and app password are required")
        session = AuthSession(normalize_server_url(server_url), login_name, app_password)
        with self._lock:
            self._session = session
        logger.info(f"Session set for {login_name} at {session.server_url}")
        return session

    def clear_session(self) -> None:
        with self._lock:
            self._session = None
        logger.info("Session cleared")
