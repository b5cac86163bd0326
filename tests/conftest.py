"""Shared test fixtures: an in-memory remote store."""

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

from pydbxbackup.exceptions import DropboxNotFoundError
from pydbxbackup.models import RemoteEntry

REMOTE_TIME = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


class FakeStream:
    """Download stream over an in-memory payload."""

    def __init__(
        self,
        data: bytes,
        error: Optional[Exception] = None,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.data = data
        self.error = error
        self.on_close = on_close
        self.closed = False

    def iter_bytes(self, chunk_size: int = 4):
        for i in range(0, len(self.data), chunk_size):
            yield self.data[i : i + chunk_size]
        if self.error is not None:
            raise self.error

    def close(self):
        if not self.closed and self.on_close is not None:
            self.on_close()
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class FakeRemoteStore:
    """In-memory implementation of the remote store interface.

    Records calls and the peak number of downloads in flight.
    """

    def __init__(self, download_delay: float = 0.0):
        self.entries: list[RemoteEntry] = []
        self.contents: dict[str, bytes] = {}
        self.download_errors: dict[str, Exception] = {}
        self.stream_errors: dict[str, Exception] = {}
        self.list_errors: list[Exception] = []
        self.refresh_error: Optional[Exception] = None
        self.validate_error: Optional[Exception] = None
        self.token_valid = True
        self.download_delay = download_delay

        self.list_calls = 0
        self.refresh_calls = 0
        self.downloaded: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def add_file(
        self, path: str, data: bytes, modified_at: Optional[datetime] = REMOTE_TIME
    ) -> RemoteEntry:
        entry = RemoteEntry(
            path=path,
            name=path.rsplit("/", 1)[-1],
            size=len(data),
            modified_at=modified_at,
        )
        self.entries.append(entry)
        self.contents[path] = data
        return entry

    def add_folder(self, path: str) -> RemoteEntry:
        entry = RemoteEntry(path=path, name=path.rsplit("/", 1)[-1], is_folder=True)
        self.entries.append(entry)
        return entry

    def list_all(self) -> list[RemoteEntry]:
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return list(self.entries)

    def _finished(self) -> None:
        with self._lock:
            self.active -= 1

    def download(self, remote_path: str):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.download_delay:
            time.sleep(self.download_delay)

        if remote_path in self.download_errors:
            self._finished()
            raise self.download_errors[remote_path]
        if remote_path not in self.contents:
            self._finished()
            raise DropboxNotFoundError(f"Not found: {remote_path}")

        with self._lock:
            self.downloaded.append(remote_path)
        entry = next(e for e in self.entries if e.path == remote_path)
        stream = FakeStream(
            self.contents[remote_path],
            error=self.stream_errors.get(remote_path),
            on_close=self._finished,
        )
        return stream, entry

    def is_token_valid(self) -> bool:
        return self.token_valid

    def refresh_token(self) -> None:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        self.token_valid = True

    def validate_token_scopes(self) -> None:
        if self.validate_error is not None:
            raise self.validate_error


@pytest.fixture
def remote():
    """An empty in-memory remote store."""
    return FakeRemoteStore()
