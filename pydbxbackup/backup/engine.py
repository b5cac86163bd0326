"""Backup engine: list, filter, download and reconcile."""

import logging
import threading
from contextlib import nullcontext
from typing import Callable, Optional, TypeVar

from ..api import RemoteStore
from ..cli_progress import BackupProgressDisplay
from ..config import Config
from ..exceptions import (
    BackupAuthenticationError,
    BackupCancelledError,
    DownloadError,
    DropboxAPIError,
    ListingError,
)
from ..models import RemoteEntry
from ..output import OutputFormatter
from ..utils import format_bytes, format_duration
from .downloader import DownloadExecutor
from .exclude import ExclusionFilter
from .orphans import OrphanReconciler
from .stats import (
    BackupStats,
    StatsSnapshot,
    display_count_summary,
    display_size_summary,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_refresh_retry(
    fn: Callable[[], T], refresh: Callable[[], None], description: str = "Operation"
) -> T:
    """Call ``fn``; on failure refresh the credential and call it once more.

    Args:
        fn: Operation to run
        refresh: Credential refresh
        description: Name used in log messages

    Returns:
        Result of the first successful call

    Raises:
        DropboxAPIError: The refresh error if the refresh fails, otherwise
            the error of the second attempt
    """
    try:
        return fn()
    except DropboxAPIError as e:
        logger.warning(f"{description} failed, attempting token refresh: {e}")
        try:
            refresh()
        except DropboxAPIError as refresh_error:
            raise refresh_error from e
        return fn()


class BackupEngine:
    """Runs one backup of a Dropbox account into a local directory."""

    def __init__(
        self,
        config: Config,
        client: RemoteStore,
        output: Optional[OutputFormatter] = None,
    ):
        """Initialize the engine.

        Exclusion files are read and the credential is checked here, so
        configuration problems surface before anything is listed.

        Args:
            config: Run configuration
            client: Remote store (normally a DropboxClient)
            output: Console output; None disables progress and summaries

        Raises:
            ExclusionFileError: If an ``@file`` exclusion cannot be read
            BackupAuthenticationError: If the token is rejected
        """
        self.config = config
        self.client = client
        self.output = output
        self.exclusion_filter = ExclusionFilter(config.exclude)
        self._stats = BackupStats()

        try:
            client.validate_token_scopes()
        except DropboxAPIError as e:
            raise BackupAuthenticationError(
                f"Token validation failed: {e}. Please check that your app has "
                f"the required permissions (files.metadata.read, "
                f"files.content.read)"
            ) from e

    @property
    def stats(self) -> StatsSnapshot:
        """Statistics of the current or last run."""
        return self._stats.snapshot()

    def run(self, cancel_event: Optional[threading.Event] = None) -> StatsSnapshot:
        """Execute the backup.

        Args:
            cancel_event: Set it from another thread to stop the run. Work
                already finished is kept.

        Returns:
            Final statistics

        Raises:
            BackupAuthenticationError: If the token cannot be refreshed
            ListingError: If listing fails even after a token refresh
            DownloadError: If any download failed (after all finished)
            OrphanCleanupError: If deleting orphaned files failed
            BackupCancelledError: If the run was cancelled
        """
        cancel_event = cancel_event or threading.Event()
        self._stats = BackupStats()
        self._stats.start()
        logger.info(
            f"Starting backup process: backup_dir={self.config.backup_dir}, "
            f"max_concurrency={self.config.max_concurrency}"
        )

        try:
            self._ensure_token()
            self._check_cancelled(cancel_event, "before listing")

            entries = self._list_entries()
            self._check_cancelled(cancel_event, "after listing")

            folders = sum(1 for entry in entries if entry.is_folder)
            files = len(entries) - folders
            self._stats.set_totals(files=files, folders=folders)
            logger.info(
                f"Found {files} files and {folders} folders in Dropbox "
                f"({len(entries)} items)"
            )

            entries = self.exclusion_filter.filter(entries)
            logger.info(f"Items after filtering: {len(entries)}")

            self._download(entries, cancel_event)

            if self.config.delete:
                OrphanReconciler(self._stats).reconcile(
                    entries, self.config.backup_dir
                )
        finally:
            self._stats.finish()

        snapshot = self._stats.snapshot()
        self._log_stats(snapshot)
        return snapshot

    def _check_cancelled(self, cancel_event: threading.Event, when: str) -> None:
        if cancel_event.is_set():
            raise BackupCancelledError(f"Backup cancelled {when}")

    def _ensure_token(self) -> None:
        if self.client.is_token_valid():
            return
        logger.info("Token needs refresh, attempting to refresh...")
        try:
            self.client.refresh_token()
        except DropboxAPIError as e:
            raise BackupAuthenticationError(f"Failed to refresh token: {e}") from e

    def _list_entries(self) -> list[RemoteEntry]:
        logger.info("Listing files from Dropbox...")
        try:
            return call_with_refresh_retry(
                self.client.list_all,
                self.client.refresh_token,
                description="File listing",
            )
        except DropboxAPIError as e:
            raise ListingError(f"Failed to list Dropbox files: {e}") from e

    def _download(
        self, entries: list[RemoteEntry], cancel_event: threading.Event
    ) -> None:
        file_count = sum(1 for entry in entries if not entry.is_folder)
        show_progress = (
            self.output is not None
            and not self.output.quiet
            and not self.output.json_output
            and file_count > 0
        )
        progress = (
            BackupProgressDisplay(file_count, console=self.output.console)
            if show_progress
            else None
        )

        executor = DownloadExecutor(
            self.client,
            self._stats,
            max_concurrency=self.config.max_concurrency,
            on_complete=progress.advance if progress else None,
        )
        with progress or nullcontext():
            failures = executor.execute(
                entries, self.config.backup_dir, cancel_event=cancel_event
            )

        if cancel_event.is_set():
            raise BackupCancelledError(
                f"Backup cancelled during downloads "
                f"({len(failures)} file(s) not downloaded)"
            )
        if failures:
            raise DownloadError(failures)

    def _log_stats(self, stats: StatsSnapshot) -> None:
        logger.info(
            f"Backup completed: downloaded={stats.downloaded_files}, "
            f"skipped={stats.skipped_files}, deleted={stats.deleted_files}, "
            f"bytes={format_bytes(stats.total_bytes)}, "
            f"duration={format_duration(stats.duration)}"
        )
        if self.output is None or self.output.json_output:
            return
        if self.config.show_count:
            display_count_summary(stats, self.output)
        if self.config.show_size:
            display_size_summary(stats, self.output)
