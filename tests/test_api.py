"""Unit tests for the Dropbox API client."""

import json
from unittest.mock import patch

import httpx
import pytest

from pydbxbackup.api import DropboxClient
from pydbxbackup.exceptions import (
    DropboxAPIError,
    DropboxAuthenticationError,
    DropboxConfigError,
    DropboxDownloadError,
    DropboxInvalidResponseError,
    DropboxNetworkError,
    DropboxNotFoundError,
    DropboxPermissionError,
    DropboxRateLimitError,
)


def _file_meta(path: str, size: int = 3) -> dict:
    return {
        ".tag": "file",
        "name": path.rsplit("/", 1)[-1],
        "path_lower": path,
        "size": size,
        "client_modified": "2025-01-15T10:30:00Z",
        "content_hash": "h",
        "rev": "r1",
    }


def _folder_meta(path: str) -> dict:
    return {".tag": "folder", "name": path.rsplit("/", 1)[-1], "path_lower": path}


def _client(handler, **kwargs) -> DropboxClient:
    kwargs.setdefault("access_token", "token")
    kwargs.setdefault("retry_delay", 0.0)
    return DropboxClient(
        client_id="id",
        client_secret="secret",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestDropboxClientInit:
    """Tests for client construction."""

    def test_requires_a_token(self):
        with pytest.raises(DropboxConfigError, match="No Dropbox token"):
            DropboxClient(client_id="id", client_secret="secret")

    def test_refresh_token_only_is_accepted(self):
        client = DropboxClient(
            client_id="id", client_secret="secret", refresh_token="refresh"
        )
        assert client.is_token_valid() is False

    def test_access_token_without_expiry_is_valid(self):
        client = DropboxClient(client_id="id", client_secret="secret", access_token="t")
        assert client.is_token_valid() is True

    def test_context_manager_closes(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        with client:
            client._get_client()
        assert client._client is None


class TestRequests:
    """Tests for request plumbing and error mapping."""

    def test_bearer_token_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"entries": [], "has_more": False})

        _client(handler).list_folder("")

        assert seen["auth"] == "Bearer token"

    def test_401_raises_authentication_error(self):
        client = _client(
            lambda r: httpx.Response(401, json={"error_summary": "expired_access_token/"})
        )
        with pytest.raises(DropboxAuthenticationError, match="expired_access_token"):
            client.list_folder("")

    def test_403_raises_permission_error(self):
        client = _client(lambda r: httpx.Response(403, text="missing scope"))
        with pytest.raises(DropboxPermissionError):
            client.list_folder("")

    def test_409_not_found(self):
        client = _client(
            lambda r: httpx.Response(409, json={"error_summary": "path/not_found/.."})
        )
        with pytest.raises(DropboxNotFoundError):
            client.get_metadata("/missing")

    @patch("pydbxbackup.api.time.sleep")
    def test_5xx_is_retried(self, mock_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"entries": [], "has_more": False})

        result = _client(handler).list_folder("")

        assert result["entries"] == []
        assert len(calls) == 3
        assert mock_sleep.call_count == 2

    @patch("pydbxbackup.api.time.sleep")
    def test_5xx_gives_up_after_max_retries(self, mock_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        with pytest.raises(DropboxAPIError, match="status 500"):
            _client(handler, max_retries=2).list_folder("")
        assert len(calls) == 3

    @patch("pydbxbackup.api.time.sleep")
    def test_429_honours_retry_after(self, mock_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "7"})
            return httpx.Response(200, json={"entries": [], "has_more": False})

        _client(handler).list_folder("")

        mock_sleep.assert_called_once_with(7.0)

    @patch("pydbxbackup.api.time.sleep")
    def test_429_exhausted(self, mock_sleep):
        client = _client(lambda r: httpx.Response(429), max_retries=1)
        with pytest.raises(DropboxRateLimitError):
            client.list_folder("")

    @patch("pydbxbackup.api.time.sleep")
    def test_network_error_is_retried_then_raised(self, mock_sleep):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DropboxNetworkError, match="Network error"):
            _client(handler, max_retries=1).list_folder("")
        assert mock_sleep.call_count == 1

    def test_invalid_json(self):
        client = _client(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(DropboxInvalidResponseError):
            client.list_folder("")

    def test_retry_delay_grows_exponentially(self):
        client = _client(lambda r: httpx.Response(200), retry_delay=1.0)
        with patch("pydbxbackup.api.random.random", return_value=0.5):
            assert client._calculate_retry_delay(0) == 1.0
            assert client._calculate_retry_delay(2) == 4.0


class TestListAll:
    """Tests for recursive listing."""

    def test_paginates_and_recurses(self):
        pages = {
            "": {
                "entries": [_folder_meta("/docs"), _file_meta("/a.txt")],
                "cursor": "root-1",
                "has_more": True,
            },
            "root-1": {
                "entries": [_file_meta("/b.txt")],
                "cursor": "root-2",
                "has_more": False,
            },
            "/docs": {
                "entries": [_file_meta("/docs/c.txt")],
                "cursor": "docs-1",
                "has_more": False,
            },
        }
        requests = []

        def handler(request):
            body = json.loads(request.content)
            requests.append((request.url.path, body))
            if request.url.path.endswith("/files/list_folder/continue"):
                return httpx.Response(200, json=pages[body["cursor"]])
            return httpx.Response(200, json=pages[body["path"]])

        entries = _client(handler).list_all()

        # Folders are expanded right after they are seen
        assert [e.path for e in entries] == [
            "/docs",
            "/docs/c.txt",
            "/a.txt",
            "/b.txt",
        ]
        assert entries[0].is_folder
        assert requests[0] == ("/2/files/list_folder", {"path": "", "recursive": False})

    def test_listing_error_names_the_folder(self):
        def handler(request):
            body = json.loads(request.content)
            if body.get("path") == "/docs":
                return httpx.Response(403, text="nope")
            return httpx.Response(
                200,
                json={"entries": [_folder_meta("/docs")], "has_more": False},
            )

        with pytest.raises(DropboxPermissionError, match="Failed to list folder '/docs'"):
            _client(handler).list_all()

    def test_validate_token_scopes_lists_root_with_limit(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"entries": [], "has_more": False})

        _client(handler).validate_token_scopes()

        assert bodies == [{"path": "", "recursive": False, "limit": 1}]


class TestDownload:
    """Tests for file downloads."""

    def test_download_streams_content(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["arg"] = json.loads(request.headers["Dropbox-API-Arg"])
            return httpx.Response(
                200,
                headers={"Dropbox-API-Result": json.dumps(_file_meta("/a.txt", 11))},
                content=b"hello world",
            )

        stream, entry = _client(handler).download("/a.txt")
        with stream:
            content = b"".join(stream.iter_bytes(chunk_size=4))

        assert content == b"hello world"
        assert seen["url"] == "https://content.dropboxapi.com/2/files/download"
        assert seen["arg"] == {"path": "/a.txt"}
        assert entry.path == "/a.txt"
        assert entry.size == 11
        assert entry.modified_at is not None

    def test_download_error_is_wrapped(self):
        client = _client(
            lambda r: httpx.Response(409, json={"error_summary": "path/not_found/"})
        )
        with pytest.raises(DropboxDownloadError, match="Failed to download file /gone"):
            client.download("/gone")

    def test_invalid_result_header(self):
        client = _client(
            lambda r: httpx.Response(
                200, headers={"Dropbox-API-Result": "{not json"}, content=b"x"
            )
        )
        with pytest.raises(DropboxInvalidResponseError):
            client.download("/a.txt")

    def test_missing_result_header_uses_requested_path(self):
        client = _client(lambda r: httpx.Response(200, content=b"x"))
        stream, entry = client.download("/Docs/A.txt")
        stream.close()
        assert entry.path == "/docs/a.txt"


class TestTokenRefresh:
    """Tests for token refresh through the client."""

    def test_refresh_token_updates_access_token(self):
        seen = {}

        def handler(request):
            if request.url.path == "/oauth2/token":
                seen["body"] = request.content.decode()
                return httpx.Response(
                    200,
                    json={
                        "access_token": "new-token",
                        "token_type": "bearer",
                        "expires_in": 14400,
                    },
                )
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"entries": [], "has_more": False})

        client = _client(handler, access_token="", refresh_token="refresh")
        client.validate_token_scopes()

        assert "grant_type=refresh_token" in seen["body"]
        assert client.token.access_token == "new-token"
        assert seen["auth"] == "Bearer new-token"
        assert client.token.refresh_token == "refresh"
        assert client.is_token_valid()

    def test_refresh_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        client = _client(handler, access_token="", refresh_token="bad")
        with pytest.raises(DropboxAuthenticationError, match="status 400"):
            client.refresh_token()
