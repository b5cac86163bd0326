"""Concurrent download of remote files into the backup directory."""

import logging
import os
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Optional

from ..api import RemoteStore
from ..exceptions import BackupCancelledError, DownloadFailure, LocalFileError
from ..models import RemoteEntry
from ..utils import DEFAULT_MAX_CONCURRENCY
from .planner import BackupAction, BackupDecision, plan, should_skip
from .stats import BackupStats

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"

# Permissions requested for new files; the process umask is applied on open
FILE_MODE = 0o666


def _open_partial(local_path: Path) -> tuple[Path, int]:
    """Create an exclusive temporary file next to ``local_path``."""
    while True:
        tmp_path = local_path.with_name(
            f".{local_path.name}.{secrets.token_hex(4)}{PARTIAL_SUFFIX}"
        )
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
        except FileExistsError:
            continue
        return tmp_path, fd


def download_to_path(
    client: RemoteStore, entry: RemoteEntry, local_path: Path
) -> int:
    """Download one file and give it the remote modification time.

    Content is written to a temporary file next to the target and moved
    into place only once complete, so a failed transfer never leaves a
    truncated file at ``local_path``.

    Args:
        client: Remote store to download from
        entry: Remote file entry
        local_path: Destination path

    Returns:
        Number of bytes written

    Raises:
        DropboxAPIError: If the download fails
        LocalFileError: If the file cannot be written
    """
    parent = local_path.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LocalFileError("create directory", str(parent), e) from e

    stream, metadata = client.download(entry.path)
    with stream:
        try:
            tmp_path, fd = _open_partial(local_path)
        except OSError as e:
            raise LocalFileError("create local file", str(local_path), e) from e

        written = 0
        try:
            with os.fdopen(fd, "wb") as tmp:
                for chunk in stream.iter_bytes():
                    tmp.write(chunk)
                    written += len(chunk)
            os.replace(tmp_path, local_path)
        except OSError as e:
            _remove_quietly(tmp_path)
            raise LocalFileError("write file content to", str(local_path), e) from e
        except BaseException:
            _remove_quietly(tmp_path)
            raise

    modified_at = metadata.modified_at or entry.modified_at
    if modified_at is not None:
        mtime = modified_at.timestamp()
        try:
            os.utime(local_path, (mtime, mtime))
        except OSError as e:
            logger.warning(
                f"Failed to set file modification time for {local_path}: {e}"
            )

    return written


def _remove_quietly(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {path}: {e}")


class DownloadExecutor:
    """Downloads files with a fixed number of parallel workers.

    Failures are collected per file; one failing download never stops the
    others.
    """

    def __init__(
        self,
        client: RemoteStore,
        stats: BackupStats,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        on_complete: Optional[Callable[[RemoteEntry], None]] = None,
    ):
        """Initialize the executor.

        Args:
            client: Remote store to download from
            stats: Run statistics (updated from worker threads)
            max_concurrency: Maximum number of simultaneous downloads
            on_complete: Called with each entry once it has been handled,
                whatever the outcome

        Raises:
            ValueError: If max_concurrency is not a positive integer
        """
        if not isinstance(max_concurrency, int) or max_concurrency < 1:
            raise ValueError(
                f"max_concurrency must be a positive integer, got {max_concurrency!r}"
            )
        self.client = client
        self.stats = stats
        self.max_concurrency = max_concurrency
        self.on_complete = on_complete
        self._token_lock = threading.Lock()

    def execute(
        self,
        entries: list[RemoteEntry],
        backup_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[DownloadFailure]:
        """Download every file entry that is not up to date locally.

        The entries are planned first. Skip decisions are recorded without
        touching a worker; only downloads are handed to the pool. Folder
        entries need no work: directories are created when the files
        inside them are written.

        Args:
            entries: Filtered remote entries
            backup_dir: Root of the local backup
            cancel_event: When set, downloads that have not started yet
                fail with BackupCancelledError

        Returns:
            Failed downloads (empty on full success). Returned only after
            every worker has finished.
        """
        decisions = plan(entries, backup_dir)
        downloads: list[BackupDecision] = []
        for decision in decisions:
            if decision.action == BackupAction.SKIP:
                self._record_skip(decision.entry)
            elif decision.action == BackupAction.DOWNLOAD:
                downloads.append(decision)

        if not downloads:
            return []

        cancel_event = cancel_event or threading.Event()
        failures: list[DownloadFailure] = []
        logger.debug(
            f"Processing {len(downloads)} file(s) with {self.max_concurrency} workers"
        )

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="download"
        ) as executor:
            futures = {
                executor.submit(self._process, decision, cancel_event): decision.entry
                for decision in downloads
            }

            for future in as_completed(futures):
                entry = futures[future]
                try:
                    future.result()
                except Exception as e:
                    failures.append(DownloadFailure(path=entry.path, error=e))
                    if not isinstance(e, BackupCancelledError):
                        logger.error(f"Failed to download {entry.path}: {e}")
                if self.on_complete is not None:
                    self.on_complete(entry)

        return failures

    def _record_skip(self, entry: RemoteEntry) -> None:
        self.stats.record_skip()
        logger.debug(f"Skipping file (already up to date): {entry.path}")
        if self.on_complete is not None:
            self.on_complete(entry)

    def _ensure_token(self) -> None:
        """Refresh the credential once if it is about to expire."""
        with self._token_lock:
            if not self.client.is_token_valid():
                logger.info("Token needs refresh, attempting to refresh...")
                self.client.refresh_token()

    def _process(
        self, decision: BackupDecision, cancel_event: threading.Event
    ) -> bool:
        """Download a single planned file inside a worker thread.

        The skip check is repeated because the local file may have changed
        since the plan was made.

        Returns:
            True if the file was downloaded, False if it was skipped
        """
        entry = decision.entry
        if cancel_event.is_set():
            raise BackupCancelledError(f"Cancelled before downloading {entry.path}")

        if should_skip(decision.local_path, entry):
            self.stats.record_skip()
            logger.debug(f"Skipping file (already up to date): {entry.path}")
            return False

        self._ensure_token()

        start = time.time()
        written = download_to_path(self.client, entry, decision.local_path)
        self.stats.record_download(written)
        logger.info(
            f"Downloaded file {entry.path} ({written} bytes "
            f"in {time.time() - start:.2f}s)"
        )
        return True
