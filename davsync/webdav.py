"""
WebDAV client module for davsync.
Async httpx client for a Nextcloud-style WebDAV endpoint: listing, probing,
uploading, deleting, folder creation and preview/download.
"""

import logging
import re
import ssl
import xml.etree.ElementTree as ET
from datetime import datetime
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

import httpx

from davsync.config import config
from davsync.errors import (
    ErrorCategory,
    IO_ERROR,
    MALFORMED_RESPONSE,
    SSL_ERROR,
    TIMEOUT,
    UNREACHABLE,
    WebDavError,
    WebDavResult,
)
from davsync.models import AuthSession, MediaKind, RemoteFile
from davsync.paths import folder_chain, normalize_remote_path

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
OC_NS = "http://owncloud.org/ns"
NS = {"d": DAV_NS, "oc": OC_NS}

PROPFIND_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:" xmlns:oc="http://owncloud.org/ns">
    <d:prop>
        <d:resourcetype/>
        <d:getcontenttype/>
        <d:getcontentlength/>
        <d:getlastmodified/>
        <d:getetag/>
        <d:displayname/>
        <oc:fileid/>
    </d:prop>
</d:propfind>
"""

MULTI_STATUS = 207

# Folder discovery bounds
MAX_FOLDER_DEPTH = 3
MAX_FOLDER_COUNT = 500
MAX_DISCOVERY_RESPONSE_BYTES = 2 * 1024 * 1024

# Camera style names: IMG_20240114_123626.jpg, PXL_20240114_123626123.mp4, 20240114_123626.jpg
_CAPTURE_NAME_PATTERN = re.compile(
    r"(?:^|[^0-9])((?:19|20)\d{2})(\d{2})(\d{2})[_\-T ]?(\d{2})(\d{2})(\d{2})"
)


def parse_capture_timestamp(file_name: str) -> Optional[int]:
    """Best-effort capture time (epoch ms, local time) from a camera style file name."""
    match = _CAPTURE_NAME_PATTERN.search(file_name)
    if not match:
        return None
    year, month, day, hour, minute, second = (int(part) for part in match.groups())
    try:
        moment = datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None
    return int(moment.timestamp() * 1000)


def parse_http_date(value: Optional[str]) -> int:
    """RFC 1123 date to epoch ms, 0 when missing or unparseable."""
    if not value:
        return 0
    try:
        return int(parsedate_to_datetime(value).timestamp() * 1000)
    except (TypeError, ValueError, IndexError):
        return 0


def classify_exception(exc: Exception) -> WebDavError:
    """Map a transport exception onto the error taxonomy."""
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, httpx.ConnectTimeout):
        return WebDavError(ErrorCategory.TRANSIENT, UNREACHABLE, message)
    if isinstance(exc, httpx.TimeoutException):
        return WebDavError(ErrorCategory.TRANSIENT, TIMEOUT, message)
    if isinstance(exc, httpx.ConnectError):
        cause = exc.__cause__ or exc.__context__
        if isinstance(cause, ssl.SSLError) or "CERTIFICATE_VERIFY_FAILED" in message:
            return WebDavError(ErrorCategory.SECURITY, SSL_ERROR, message)
        return WebDavError(ErrorCategory.TRANSIENT, UNREACHABLE, message)
    if isinstance(exc, httpx.TransportError):
        return WebDavError(ErrorCategory.TRANSIENT, "network", message)
    if isinstance(exc, ssl.SSLError):
        return WebDavError(ErrorCategory.SECURITY, SSL_ERROR, message)
    if isinstance(exc, OSError):
        return WebDavError(ErrorCategory.TRANSIENT, IO_ERROR, message)
    return WebDavError(ErrorCategory.TRANSIENT, "unknown", message)


def is_media_file(entry: RemoteFile) -> bool:
    return MediaKind.from_mime_or_name(entry.content_type, entry.name) != MediaKind.UNKNOWN


class WebDavClient:
    """
    Client for the files endpoint of a single authenticated account.

    Every public operation returns a WebDavResult; transport exceptions are
    classified rather than raised.
    """

    def __init__(
        self,
        session: AuthSession,
        http_client: Optional[httpx.AsyncClient] = None,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
        upload_timeout: Optional[float] = None,
    ):
        self.session = session
        self.server_url = session.server_url.rstrip("/")
        self.dav_root = f"/remote.php/dav/files/{session.login_name}"
        self.upload_timeout = upload_timeout or config.HTTP_UPLOAD_TIMEOUT
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                read_timeout or config.HTTP_READ_TIMEOUT,
                connect=connect_timeout or config.HTTP_CONNECT_TIMEOUT,
            ),
            follow_redirects=True,
        )

    async def __aenter__(self) -> "WebDavClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _auth(self) -> tuple:
        return (self.session.login_name, self.session.app_password)

    def file_url(self, remote_path: str) -> str:
        normalized = normalize_remote_path(remote_path)
        login = quote(self.session.login_name, safe="")
        return f"{self.server_url}/remote.php/dav/files/{login}{quote(normalized)}"

    def extract_remote_path(self, href: str) -> str:
        """Strip the DAV root from a multistatus href, returning a normalized user path."""
        decoded = unquote(href.strip())
        if decoded.startswith("http://") or decoded.startswith("https://"):
            decoded = "/" + decoded.split("/", 3)[-1] if decoded.count("/") >= 3 else "/"
        if decoded.startswith(self.dav_root):
            decoded = decoded[len(self.dav_root):]
        return normalize_remote_path(decoded)

    async def _request(self, method: str, url: str, **kwargs) -> WebDavResult[httpx.Response]:
        kwargs.setdefault("auth", self._auth())
        try:
            response = await self._client.request(method, url, **kwargs)
        except (httpx.HTTPError, ssl.SSLError, OSError) as e:
            error = classify_exception(e)
            logger.warning(f"{method} {url} failed: {error.code} ({error.message})")
            return WebDavResult.failure(error)
        return WebDavResult.success(response)

    # Listing

    def parse_multistatus(self, xml_text: str) -> list[RemoteFile]:
        """Parse a PROPFIND multistatus document. Raises ET.ParseError on malformed XML."""
        root = ET.fromstring(xml_text.strip())
        entries = []
        for response in root.findall("d:response", NS):
            href = response.findtext("d:href", default="", namespaces=NS)
            if not href:
                continue
            prop = None
            for propstat in response.findall("d:propstat", NS):
                status = propstat.findtext("d:status", default="200", namespaces=NS)
                if " 200" in status or status == "200":
                    prop = propstat.find("d:prop", NS)
                    break
            if prop is None:
                prop = response.find("d:propstat/d:prop", NS)
            if prop is None:
                continue

            remote_path = self.extract_remote_path(href)
            resource_type = prop.find("d:resourcetype", NS)
            is_directory = resource_type is not None and resource_type.find("d:collection", NS) is not None
            name = prop.findtext("d:displayname", default="", namespaces=NS).strip()
            if not name or not is_directory:
                name = remote_path.rsplit("/", 1)[-1]
            length_text = prop.findtext("d:getcontentlength", default="", namespaces=NS).strip()
            try:
                size = int(length_text) if length_text else 0
            except ValueError:
                size = 0
            file_id = prop.findtext("oc:fileid", default="", namespaces=NS).strip() or None

            entries.append(RemoteFile(
                remote_path=remote_path,
                name=name,
                is_directory=is_directory,
                content_type=prop.findtext("d:getcontenttype", default="", namespaces=NS).strip(),
                size=size,
                last_modified=parse_http_date(
                    prop.findtext("d:getlastmodified", default="", namespaces=NS).strip()
                ),
                etag=prop.findtext("d:getetag", default="", namespaces=NS).strip().strip('"'),
                file_id=file_id,
                capture_timestamp=None if is_directory else parse_capture_timestamp(name),
            ))
        return entries

    async def propfind(
        self,
        remote_path: str,
        depth: str,
        max_bytes: Optional[int] = None,
    ) -> WebDavResult[list[RemoteFile]]:
        """Raw PROPFIND returning every entry including the folder itself."""
        url = self.file_url(remote_path)
        if not url.endswith("/"):
            url += "/"
        result = await self._request(
            "PROPFIND",
            url,
            content=PROPFIND_BODY.encode("utf-8"),
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
        )
        if not result.ok:
            return WebDavResult.failure(result.error)
        response = result.data
        if response.status_code != MULTI_STATUS:
            return WebDavResult.failure(WebDavError.from_status(
                response.status_code, f"PROPFIND {remote_path} returned {response.status_code}"
            ))
        limit = max_bytes or config.MAX_LISTING_BYTES
        if len(response.content) > limit:
            return WebDavResult.failure(WebDavError(
                ErrorCategory.MALFORMED,
                MALFORMED_RESPONSE,
                f"Listing of {remote_path} exceeds {limit} bytes",
                response.status_code,
            ))
        try:
            return WebDavResult.success(self.parse_multistatus(response.text))
        except ET.ParseError as e:
            logger.warning(f"Malformed multistatus for {remote_path}: {e}")
            return WebDavResult.failure(WebDavError(
                ErrorCategory.MALFORMED, MALFORMED_RESPONSE, str(e), response.status_code
            ))

    async def list_media_files(self, folder: str, recursive: bool = True) -> WebDavResult[list[RemoteFile]]:
        """Media files under a folder, recursively (Depth: infinity) or one level deep."""
        result = await self.propfind(folder, "infinity" if recursive else "1")
        if not result.ok:
            return result
        files = [entry for entry in result.data if not entry.is_directory and is_media_file(entry)]
        logger.debug(f"Listed {len(files)} media files under {folder} (recursive={recursive})")
        return WebDavResult.success(files)

    async def discover_folders(
        self,
        root: str = "/",
        max_depth: int = MAX_FOLDER_DEPTH,
        max_count: int = MAX_FOLDER_COUNT,
    ) -> WebDavResult[list[RemoteFile]]:
        """Breadth-first folder discovery for folder selection, bounded in depth and count."""
        discovered: list[RemoteFile] = []
        frontier = [(normalize_remote_path(root), 0)]
        while frontier and len(discovered) < max_count:
            current, depth = frontier.pop(0)
            result = await self.propfind(current, "1", max_bytes=MAX_DISCOVERY_RESPONSE_BYTES)
            if not result.ok:
                if current == normalize_remote_path(root):
                    return WebDavResult.failure(result.error)
                logger.warning(f"Skipping folder {current} during discovery: {result.error.code}")
                continue
            for entry in result.data:
                if not entry.is_directory or entry.remote_path == current:
                    continue
                discovered.append(entry)
                if len(discovered) >= max_count:
                    break
                if depth + 1 < max_depth:
                    frontier.append((entry.remote_path, depth + 1))
        return WebDavResult.success(discovered)

    # Single file operations

    async def head_file(self, remote_path: str) -> WebDavResult[Optional[RemoteFile]]:
        """Existence probe. A 404 is a successful answer of None."""
        result = await self._request("HEAD", self.file_url(remote_path))
        if not result.ok:
            return WebDavResult.failure(result.error)
        response = result.data
        if response.status_code == 404:
            return WebDavResult.success(None)
        if response.status_code >= 400:
            return WebDavResult.failure(WebDavError.from_status(response.status_code))
        normalized = normalize_remote_path(remote_path)
        length = response.headers.get("Content-Length", "")
        return WebDavResult.success(RemoteFile(
            remote_path=normalized,
            name=normalized.rsplit("/", 1)[-1],
            is_directory=False,
            content_type=response.headers.get("Content-Type", ""),
            size=int(length) if length.isdigit() else 0,
            last_modified=parse_http_date(response.headers.get("Last-Modified")),
            etag=response.headers.get("ETag", "").strip('"'),
            file_id=response.headers.get("OC-FileId"),
        ))

    async def ensure_folder_path(self, remote_path: str) -> WebDavResult[None]:
        """Create every missing folder along remote_path. Existing folders are fine."""
        for folder in folder_chain(remote_path):
            result = await self._request("MKCOL", self.file_url(folder))
            if not result.ok:
                return WebDavResult.failure(result.error)
            status = result.data.status_code
            # 405 Method Not Allowed means the collection already exists
            if status in (200, 201, 204, 405):
                continue
            return WebDavResult.failure(WebDavError.from_status(
                status, f"MKCOL {folder} returned {status}"
            ))
        return WebDavResult.success(None)

    async def put_file(
        self,
        remote_path: str,
        local_path: Path,
        content_type: str = "application/octet-stream",
    ) -> WebDavResult[None]:
        """Stream a local file to remote_path."""
        try:
            length = Path(local_path).stat().st_size
        except OSError as e:
            return WebDavResult.failure(WebDavError(ErrorCategory.UNSUPPORTED, IO_ERROR, str(e)))

        async def body():
            with open(local_path, "rb") as handle:
                while True:
                    chunk = handle.read(256 * 1024)
                    if not chunk:
                        break
                    yield chunk

        result = await self._request(
            "PUT",
            self.file_url(remote_path),
            content=body(),
            headers={"Content-Type": content_type or "application/octet-stream", "Content-Length": str(length)},
            timeout=httpx.Timeout(self.upload_timeout, connect=config.HTTP_CONNECT_TIMEOUT),
        )
        if not result.ok:
            return WebDavResult.failure(result.error)
        status = result.data.status_code
        if status in (200, 201, 204):
            return WebDavResult.success(None)
        return WebDavResult.failure(WebDavError.from_status(status, f"PUT {remote_path} returned {status}"))

    async def delete_file(self, remote_path: str) -> WebDavResult[None]:
        result = await self._request("DELETE", self.file_url(remote_path))
        if not result.ok:
            return WebDavResult.failure(result.error)
        status = result.data.status_code
        if status in (200, 202, 204):
            return WebDavResult.success(None)
        return WebDavResult.failure(WebDavError.from_status(status, f"DELETE {remote_path} returned {status}"))

    # Content

    def preview_url(self, remote_path: str, size: int) -> str:
        encoded = quote(normalize_remote_path(remote_path), safe="")
        return f"{self.server_url}/index.php/core/preview?file={encoded}&x={size}&y={size}&a=1"

    async def fetch_preview(self, remote_path: str, size: Optional[int] = None) -> WebDavResult[bytes]:
        """Server-rendered preview image bytes."""
        edge = size or config.THUMBNAIL_SIZE
        result = await self._request("GET", self.preview_url(remote_path, edge))
        if not result.ok:
            return WebDavResult.failure(result.error)
        response = result.data
        if response.status_code != 200:
            return WebDavResult.failure(WebDavError.from_status(
                response.status_code, f"Preview for {remote_path} returned {response.status_code}"
            ))
        if not response.content:
            return WebDavResult.failure(WebDavError(
                ErrorCategory.MALFORMED, "empty_preview", f"Empty preview for {remote_path}", 200
            ))
        return WebDavResult.success(response.content)

    async def download_to_file(
        self,
        remote_path: str,
        destination: Path,
        max_bytes: Optional[int] = None,
    ) -> WebDavResult[int]:
        """Stream the raw file to destination. Returns bytes written."""
        written = 0
        try:
            async with self._client.stream("GET", self.file_url(remote_path), auth=self._auth()) as response:
                if response.status_code != 200:
                    return WebDavResult.failure(WebDavError.from_status(
                        response.status_code, f"GET {remote_path} returned {response.status_code}"
                    ))
                with open(destination, "wb") as handle:
                    async for chunk in response.aiter_bytes():
                        written += len(chunk)
                        if max_bytes is not None and written > max_bytes:
                            return WebDavResult.failure(WebDavError(
                                ErrorCategory.UNSUPPORTED,
                                "source_too_large",
                                f"{remote_path} exceeds {max_bytes} bytes",
                            ))
                        handle.write(chunk)
        except (httpx.HTTPError, ssl.SSLError, OSError) as e:
            error = classify_exception(e)
            logger.warning(f"Download of {remote_path} failed: {error.code} ({error.message})")
            return WebDavResult.failure(error)
        return WebDavResult.success(written)
