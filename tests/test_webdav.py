"""
Unit tests for the WebDAV client and the error taxonomy.
Requests are served by httpx.MockTransport.
"""

from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

import httpx
import pytest

from davsync.errors import (
    AUTH_FAILED,
    ErrorCategory,
    NOT_FOUND,
    TIMEOUT,
    UNREACHABLE,
    WebDavError,
)
from davsync.models import AuthSession
from davsync.paths import normalize_remote_path
from davsync.webdav import WebDavClient, parse_capture_timestamp, parse_http_date

DAV_PREFIX = "/remote.php/dav/files/alice"
SESSION = AuthSession("https://cloud.example.com", "alice", "app-password")


def dav_entry(path: str, is_dir: bool = False, content_type: str = "", size: int = 0,
              etag: str = "abc", file_id: str = "42") -> str:
    href = DAV_PREFIX + quote(path) + ("/" if is_dir else "")
    resource_type = "<d:collection/>" if is_dir else ""
    return f"""
    <d:response>
        <d:href>{href}</d:href>
        <d:propstat>
            <d:prop>
                <d:resourcetype>{resource_type}</d:resourcetype>
                <d:getcontenttype>{content_type}</d:getcontenttype>
                <d:getcontentlength>{size}</d:getcontentlength>
                <d:getlastmodified>Mon, 15 Jan 2024 10:00:00 GMT</d:getlastmodified>
                <d:getetag>"{etag}"</d:getetag>
                <oc:fileid>{file_id}</oc:fileid>
            </d:prop>
            <d:status>HTTP/1.1 200 OK</d:status>
        </d:propstat>
    </d:response>"""


def multistatus(*entries: str) -> str:
    return (
        '<?xml version="1.0"?>'
        '<d:multistatus xmlns:d="DAV:" xmlns:oc="http://owncloud.org/ns">'
        + "".join(entries)
        + "</d:multistatus>"
    )


def user_path(request: httpx.Request) -> str:
    path = request.url.path
    if path.startswith(DAV_PREFIX):
        path = path[len(DAV_PREFIX):]
    return normalize_remote_path(path)


def make_client(handler) -> tuple[WebDavClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebDavClient(SESSION, http_client=http), http


class TestParsingHelpers:
    """Tests for file name and header parsing."""

    def test_capture_timestamp_from_camera_name(self):
        expected = int(datetime(2024, 1, 14, 12, 36, 26).timestamp() * 1000)
        assert parse_capture_timestamp("IMG_20240114_123626.jpg") == expected
        assert parse_capture_timestamp("PXL_20240114_123626123.mp4") == expected

    def test_capture_timestamp_invalid_or_missing(self):
        assert parse_capture_timestamp("IMG_20241340_000000.jpg") is None
        assert parse_capture_timestamp("holiday.jpg") is None

    def test_http_date(self):
        expected = int(datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc).timestamp() * 1000)
        assert parse_http_date("Mon, 15 Jan 2024 10:00:00 GMT") == expected
        assert parse_http_date("not a date") == 0
        assert parse_http_date(None) == 0

    def test_extract_remote_path(self):
        client = WebDavClient(SESSION, http_client=httpx.AsyncClient())
        assert client.extract_remote_path(f"{DAV_PREFIX}/Photos/a%20b.jpg") == "/Photos/a b.jpg"
        assert client.extract_remote_path(
            f"https://cloud.example.com{DAV_PREFIX}/Photos/"
        ) == "/Photos"


class TestErrorTaxonomy:
    """Tests for HTTP status classification."""

    @pytest.mark.parametrize("status,category,code", [
        (401, ErrorCategory.AUTH, AUTH_FAILED),
        (403, ErrorCategory.AUTH, AUTH_FAILED),
        (404, ErrorCategory.NOT_FOUND, NOT_FOUND),
        (429, ErrorCategory.TRANSIENT, "http_429"),
        (503, ErrorCategory.TRANSIENT, "http_503"),
        (415, ErrorCategory.UNSUPPORTED, "http_415"),
    ])
    def test_from_status(self, status, category, code):
        error = WebDavError.from_status(status)
        assert error.category == category
        assert error.code == code
        assert error.status_code == status

    def test_transient_flags(self):
        assert WebDavError.from_status(500).is_transient
        assert WebDavError.from_status(401).is_terminal
        assert WebDavError(ErrorCategory.TRANSIENT, UNREACHABLE).is_unreachable


class TestListing:
    """Tests for PROPFIND listings."""

    @pytest.mark.asyncio
    async def test_lists_only_media_files(self):
        """Folders, the folder itself and non-media files are filtered out."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["depth"] = request.headers["Depth"]
            return httpx.Response(207, text=multistatus(
                dav_entry("/Photos", is_dir=True),
                dav_entry("/Photos/IMG_20240114_123626.jpg", content_type="image/jpeg", size=2048),
                dav_entry("/Photos/clip.mov", size=4096),
                dav_entry("/Photos/notes.txt", content_type="text/plain"),
                dav_entry("/Photos/2024", is_dir=True),
            ))

        client, http = make_client(handler)
        async with http:
            result = await client.list_media_files("/Photos", recursive=True)

        assert result.ok
        assert seen == {"method": "PROPFIND", "depth": "infinity"}
        by_path = {entry.remote_path: entry for entry in result.data}
        assert set(by_path) == {"/Photos/IMG_20240114_123626.jpg", "/Photos/clip.mov"}
        photo = by_path["/Photos/IMG_20240114_123626.jpg"]
        assert photo.size == 2048
        assert photo.etag == "abc"
        assert photo.file_id == "42"
        assert photo.capture_timestamp is not None

    @pytest.mark.asyncio
    async def test_single_level_depth(self):
        depths = []

        def handler(request):
            depths.append(request.headers["Depth"])
            return httpx.Response(207, text=multistatus(dav_entry("/Photos", is_dir=True)))

        client, http = make_client(handler)
        async with http:
            result = await client.list_media_files("/Photos", recursive=False)

        assert result.ok and result.data == []
        assert depths == ["1"]

    @pytest.mark.asyncio
    async def test_not_found(self):
        client, http = make_client(lambda request: httpx.Response(404))
        async with http:
            result = await client.list_media_files("/Gone")

        assert not result.ok
        assert result.error.category == ErrorCategory.NOT_FOUND

    @pytest.mark.asyncio
    async def test_malformed_xml(self):
        client, http = make_client(lambda request: httpx.Response(207, text="<d:multistatus"))
        async with http:
            result = await client.list_media_files("/Photos")

        assert result.error.category == ErrorCategory.MALFORMED

    @pytest.mark.asyncio
    async def test_unreachable_host(self):
        """Connect failures are classified, not raised."""
        def handler(request):
            raise httpx.ConnectError("Name or service not known", request=request)

        client, http = make_client(handler)
        async with http:
            result = await client.list_media_files("/Photos")

        assert result.error.code == UNREACHABLE
        assert result.error.is_transient

    @pytest.mark.asyncio
    async def test_read_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, http = make_client(handler)
        async with http:
            result = await client.list_media_files("/Photos")

        assert result.error.code == TIMEOUT

    @pytest.mark.asyncio
    async def test_discover_folders(self):
        tree = {
            "/": ["/Photos", "/Docs"],
            "/Photos": ["/Photos/2024"],
        }

        def handler(request):
            current = user_path(request)
            entries = [dav_entry(current, is_dir=True)]
            entries += [dav_entry(child, is_dir=True) for child in tree.get(current, [])]
            entries.append(dav_entry(f"{current.rstrip('/')}/x.jpg", content_type="image/jpeg"))
            return httpx.Response(207, text=multistatus(*entries))

        client, http = make_client(handler)
        async with http:
            result = await client.discover_folders("/")

        assert result.ok
        assert [entry.remote_path for entry in result.data] == ["/Photos", "/Docs", "/Photos/2024"]


class TestFileOperations:
    """Tests for HEAD, MKCOL, PUT, DELETE and content fetches."""

    @pytest.mark.asyncio
    async def test_head_missing_is_none(self):
        client, http = make_client(lambda request: httpx.Response(404))
        async with http:
            result = await client.head_file("/Backup/a.jpg")

        assert result.ok
        assert result.data is None

    @pytest.mark.asyncio
    async def test_head_existing(self):
        def handler(request):
            return httpx.Response(200, headers={"Content-Length": "1234", "ETag": '"e9"'})

        client, http = make_client(handler)
        async with http:
            result = await client.head_file("/Backup/a.jpg")

        assert result.data.size == 1234
        assert result.data.etag == "e9"

    @pytest.mark.asyncio
    async def test_ensure_folder_path_creates_each_level(self):
        created = []

        def handler(request):
            assert request.method == "MKCOL"
            path = user_path(request)
            created.append(path)
            return httpx.Response(405 if path == "/Backup" else 201)

        client, http = make_client(handler)
        async with http:
            result = await client.ensure_folder_path("/Backup/2024/03")

        assert result.ok
        assert created == ["/Backup", "/Backup/2024", "/Backup/2024/03"]

    @pytest.mark.asyncio
    async def test_ensure_folder_path_conflict(self):
        client, http = make_client(lambda request: httpx.Response(409))
        async with http:
            result = await client.ensure_folder_path("/Backup/2024")

        assert not result.ok
        assert result.error.code == "http_409"

    @pytest.mark.asyncio
    async def test_put_streams_file(self, temp_dir: Path):
        source = temp_dir / "a.jpg"
        source.write_bytes(b"jpeg-bytes")
        received = {}

        def handler(request):
            received["body"] = request.content
            received["type"] = request.headers["Content-Type"]
            return httpx.Response(201)

        client, http = make_client(handler)
        async with http:
            result = await client.put_file("/Backup/a.jpg", source, "image/jpeg")

        assert result.ok
        assert received == {"body": b"jpeg-bytes", "type": "image/jpeg"}

    @pytest.mark.asyncio
    async def test_put_auth_failure(self, temp_dir: Path):
        source = temp_dir / "a.jpg"
        source.write_bytes(b"x")
        client, http = make_client(lambda request: httpx.Response(401))
        async with http:
            result = await client.put_file("/Backup/a.jpg", source)

        assert result.error.category == ErrorCategory.AUTH

    @pytest.mark.asyncio
    async def test_put_missing_local_file(self, temp_dir: Path):
        client, http = make_client(lambda request: httpx.Response(201))
        async with http:
            result = await client.put_file("/Backup/a.jpg", temp_dir / "missing.jpg")

        assert not result.ok
        assert result.error.is_terminal

    @pytest.mark.asyncio
    async def test_delete(self):
        client, http = make_client(lambda request: httpx.Response(204))
        async with http:
            result = await client.delete_file("/Backup/a.jpg")
        assert result.ok

    @pytest.mark.asyncio
    async def test_preview(self):
        def handler(request):
            assert request.url.path == "/index.php/core/preview"
            assert request.url.params["x"] == "256"
            return httpx.Response(200, content=b"preview")

        client, http = make_client(handler)
        async with http:
            result = await client.fetch_preview("/Photos/a.jpg", 256)

        assert result.data == b"preview"

    @pytest.mark.asyncio
    async def test_preview_unsupported_keeps_status(self):
        client, http = make_client(lambda request: httpx.Response(415))
        async with http:
            result = await client.fetch_preview("/Photos/clip.mkv", 256)

        assert result.error.status_code == 415

    @pytest.mark.asyncio
    async def test_download_respects_size_cap(self, temp_dir: Path):
        client, http = make_client(lambda request: httpx.Response(200, content=b"x" * 100))
        async with http:
            ok = await client.download_to_file("/Photos/a.jpg", temp_dir / "ok.bin", max_bytes=1000)
            too_big = await client.download_to_file("/Photos/a.jpg", temp_dir / "big.bin", max_bytes=10)

        assert ok.data == 100
        assert (temp_dir / "ok.bin").read_bytes() == b"x" * 100
        assert too_big.error.code == "source_too_large"
