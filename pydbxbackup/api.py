"""API client for Dropbox."""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections.abc import Iterator
from typing import Any, Protocol

import httpx

from .auth import AuthConfig, OAuthToken, refresh_access_token
from .exceptions import (
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
from .models import RemoteEntry
from .utils import DEFAULT_MAX_RETRIES, DOWNLOAD_CHUNK_SIZE

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"


class RemoteStore(Protocol):
    """Operations the backup engine needs from a remote store."""

    def list_all(self) -> list[RemoteEntry]: ...

    def download(self, remote_path: str) -> tuple["DownloadStream", RemoteEntry]: ...

    def is_token_valid(self) -> bool: ...

    def refresh_token(self) -> None: ...

    def validate_token_scopes(self) -> None: ...


class DownloadStream:
    """Streaming body of a file download.

    Use as a context manager, or call :meth:`close` when done.
    """

    def __init__(self, response: httpx.Response, remote_path: str):
        self._response = response
        self.remote_path = remote_path

    def iter_bytes(self, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the file content in chunks.

        Raises:
            DropboxNetworkError: If the connection breaks mid-transfer
        """
        try:
            yield from self._response.iter_bytes(chunk_size=chunk_size)
        except httpx.RequestError as e:
            raise DropboxNetworkError(
                f"Network error while downloading {self.remote_path}: {e}"
            ) from e

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> "DownloadStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class DropboxClient:
    """Client for the Dropbox HTTP API (v2)."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        access_token: str = "",
        refresh_token: str = "",
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        api_url: str = API_URL,
        content_url: str = CONTENT_URL,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize Dropbox API client.

        Args:
            client_id: OAuth2 app key
            client_secret: OAuth2 app secret
            access_token: Current access token (may be empty if a refresh
                token is given)
            refresh_token: Long-lived refresh token
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            api_url: Base URL of the RPC endpoints
            content_url: Base URL of the content endpoints
            transport: Optional httpx transport (used by tests)
        """
        if not access_token and not refresh_token:
            raise DropboxConfigError(
                "No Dropbox token configured. Run 'pydbxbackup auth' or set "
                "DROPBOX_ACCESS_TOKEN / DROPBOX_REFRESH_TOKEN."
            )

        self.auth_config = AuthConfig(client_id=client_id, client_secret=client_secret)
        self.token = OAuthToken(access_token=access_token, refresh_token=refresh_token)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self.content_url = content_url.rstrip("/")
        self._transport = transport

        self._client: httpx.Client | None = None
        self._token_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> "DropboxClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================
    # Token lifecycle
    # =========================

    def is_token_valid(self) -> bool:
        """Check that an access token exists and is not about to expire."""
        return self.token.is_valid()

    def refresh_token(self) -> None:
        """Obtain a new access token using the refresh token.

        Raises:
            DropboxAuthenticationError: If the refresh fails
        """
        with self._token_lock:
            self.token = refresh_access_token(
                self.auth_config,
                self.token.refresh_token,
                http_client=self._get_client(),
            )

    def ensure_token(self) -> None:
        """Refresh the access token if it is missing or about to expire.

        Safe to call from several download threads at once: only the first
        caller refreshes, the others see the new token.
        """
        if self.token.is_valid():
            return
        with self._token_lock:
            if self.token.is_valid():
                return
            self.token = refresh_access_token(
                self.auth_config,
                self.token.refresh_token,
                http_client=self._get_client(),
            )

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token.access_token}"}

    # =========================
    # Request plumbing
    # =========================

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _error_summary(self, response: httpx.Response) -> str:
        """Extract the ``error_summary`` field of a Dropbox error body."""
        try:
            response.read()
            data = response.json()
        except httpx.HTTPError:
            return ""
        except ValueError:
            return response.text.strip()
        if isinstance(data, dict):
            return str(data.get("error_summary") or data.get("error") or "")
        return ""

    def _handle_http_error(
        self, response: httpx.Response, attempt: int
    ) -> tuple[DropboxAPIError, bool]:
        """Map an error response to an exception.

        Args:
            response: The failed response
            attempt: Current attempt number

        Returns:
            Tuple of (exception to raise, should_retry)
        """
        status_code = response.status_code
        summary = self._error_summary(response)
        detail = f": {summary}" if summary else ""

        if status_code == 401:
            return (
                DropboxAuthenticationError(
                    f"Invalid or expired access token{detail}"
                ),
                False,
            )
        if status_code == 403:
            return (
                DropboxPermissionError(
                    f"Access forbidden - check the app permissions{detail}"
                ),
                False,
            )
        if status_code == 409:
            if "not_found" in summary:
                return DropboxNotFoundError(f"Path not found{detail}"), False
            return DropboxAPIError(f"Endpoint error{detail}"), False
        if status_code == 429:
            error = DropboxRateLimitError("Rate limit exceeded - please try again later")
            return error, attempt < self.max_retries

        error = DropboxAPIError(f"API request failed with status {status_code}{detail}")
        return error, 500 <= status_code < 600 and attempt < self.max_retries

    def _send(
        self,
        method: str,
        url: str,
        *,
        stream: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request with retry logic.

        Args:
            method: HTTP method
            url: Absolute URL
            stream: Return without reading the body
            **kwargs: Additional arguments passed to ``httpx.Client.build_request``

        Returns:
            Successful response (status < 400)

        Raises:
            DropboxAPIError: If the request fails after all retries
        """
        client = self._get_client()
        extra_headers = kwargs.pop("headers", {})
        last_exception: Exception | None = None

        for attempt in range(self.max_retries + 1):
            headers = {**self._auth_headers(), **extra_headers}
            request = client.build_request(method, url, headers=headers, **kwargs)
            try:
                response = client.send(request, stream=stream)
            except httpx.RequestError as e:
                last_exception = DropboxNetworkError(f"Network error: {e}")
                if attempt < self.max_retries:
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise last_exception from e

            if response.status_code < 400:
                return response

            error, should_retry = self._handle_http_error(response, attempt)
            response.close()
            last_exception = error
            if not should_retry:
                raise error

            # Special handling for rate limits: use Retry-After header
            retry_after = response.headers.get("Retry-After", "")
            if isinstance(error, DropboxRateLimitError) and retry_after.isdigit():
                delay = float(retry_after)
            else:
                delay = self._calculate_retry_delay(attempt)
            logger.debug(
                f"{method} {url} failed (attempt {attempt + 1}/"
                f"{self.max_retries + 1}), retrying in {delay:.1f}s: {error}"
            )
            time.sleep(delay)

        if last_exception:
            raise last_exception
        raise DropboxAPIError("Request failed after all retry attempts")

    def _rpc(self, endpoint: str, arg: dict[str, Any] | None = None) -> Any:
        """Call an RPC endpoint with a JSON argument and return the JSON result."""
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        response = self._send("POST", url, json=arg if arg is not None else None)
        try:
            return response.json()
        except ValueError as e:
            raise DropboxInvalidResponseError(
                f"Invalid JSON response from {endpoint}"
            ) from e

    # =========================
    # Listing
    # =========================

    def list_folder(self, path: str, limit: int | None = None) -> dict[str, Any]:
        """List one page of a folder (non-recursive).

        Args:
            path: Folder path ("" for the root)
            limit: Maximum entries per page

        Returns:
            Raw response with ``entries``, ``cursor`` and ``has_more``
        """
        arg: dict[str, Any] = {"path": path, "recursive": False}
        if limit is not None:
            arg["limit"] = limit
        return self._rpc("files/list_folder", arg)

    def list_folder_continue(self, cursor: str) -> dict[str, Any]:
        """Fetch the next page of a folder listing."""
        return self._rpc("files/list_folder/continue", {"cursor": cursor})

    def list_all(self) -> list[RemoteEntry]:
        """Recursively list every file and folder in the account.

        Folders are expanded depth-first right after they are seen.

        Returns:
            Flat list of entries

        Raises:
            DropboxAPIError: If any page fails to load
        """
        entries: list[RemoteEntry] = []
        self._list_recursive("", entries)
        logger.info(f"Listed all files from Dropbox: {len(entries)} entries")
        return entries

    def _list_recursive(self, path: str, entries: list[RemoteEntry]) -> None:
        try:
            result = self.list_folder(path)
        except DropboxAPIError as e:
            raise type(e)(f"Failed to list folder '{path or '/'}': {e}") from e

        while True:
            for raw in result.get("entries", []):
                entry = RemoteEntry.from_api_response(raw)
                entries.append(entry)
                if entry.is_folder:
                    self._list_recursive(entry.path, entries)

            if not result.get("has_more"):
                break

            try:
                result = self.list_folder_continue(result["cursor"])
            except DropboxAPIError as e:
                raise type(e)(
                    f"Failed to continue listing folder '{path or '/'}': {e}"
                ) from e

    def get_metadata(self, path: str) -> RemoteEntry:
        """Get metadata for a single file or folder."""
        return RemoteEntry.from_api_response(
            self._rpc("files/get_metadata", {"path": path})
        )

    def validate_token_scopes(self) -> None:
        """Make a cheap call to verify the token and its permissions.

        Raises:
            DropboxAuthenticationError: If the token is rejected
            DropboxPermissionError: If the app lacks ``files.metadata.read``
        """
        self.ensure_token()
        self.list_folder("", limit=1)
        logger.info("Token validation successful")

    # =========================
    # Download
    # =========================

    def download(self, remote_path: str) -> tuple[DownloadStream, RemoteEntry]:
        """Start downloading a file.

        Args:
            remote_path: Path of the file in Dropbox

        Returns:
            Tuple of (content stream, metadata of the downloaded revision).
            The caller must close the stream.

        Raises:
            DropboxDownloadError: If the download cannot be started
        """
        url = f"{self.content_url}/files/download"
        arg = json.dumps({"path": remote_path})
        try:
            response = self._send(
                "POST", url, stream=True, headers={"Dropbox-API-Arg": arg}
            )
        except DropboxNetworkError:
            raise
        except DropboxAPIError as e:
            raise DropboxDownloadError(
                f"Failed to download file {remote_path}: {e}"
            ) from e

        try:
            metadata = json.loads(response.headers.get("Dropbox-API-Result", "{}"))
        except ValueError as e:
            response.close()
            raise DropboxInvalidResponseError(
                f"Invalid Dropbox-API-Result header for {remote_path}"
            ) from e

        metadata.setdefault("path_lower", remote_path.lower())
        entry = RemoteEntry.from_api_response(metadata)
        logger.debug(f"Downloading {remote_path} ({entry.size} bytes)")
        return DownloadStream(response, remote_path), entry
