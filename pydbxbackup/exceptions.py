"""Exceptions raised by pydbxbackup."""

from __future__ import annotations

from dataclasses import dataclass


class DropboxAPIError(Exception):
    """Base exception for Dropbox API errors."""


class DropboxConfigError(DropboxAPIError):
    """Raised when the configuration is missing or invalid."""


class DropboxAuthenticationError(DropboxAPIError):
    """Raised when the access token is invalid or cannot be refreshed."""


class DropboxPermissionError(DropboxAPIError):
    """Raised when the app lacks a required permission scope."""


class DropboxNotFoundError(DropboxAPIError):
    """Raised when a remote path does not exist."""


class DropboxRateLimitError(DropboxAPIError):
    """Raised when Dropbox asks us to slow down (HTTP 429)."""


class DropboxNetworkError(DropboxAPIError):
    """Raised on transport level failures."""


class DropboxDownloadError(DropboxAPIError):
    """Raised when a file download fails."""


class DropboxInvalidResponseError(DropboxAPIError):
    """Raised when the server response cannot be understood."""


# =============================================================================
# Backup engine errors
# =============================================================================


class BackupError(Exception):
    """Base exception for failures of a backup run.

    Attributes:
        stage: Name of the run stage that failed
    """

    stage = "backup"


class BackupAuthenticationError(BackupError):
    """Credential validation or refresh failed."""

    stage = "authentication"


class ListingError(BackupError):
    """Listing the remote tree failed, even after a token refresh."""

    stage = "listing"


class ExclusionFileError(BackupError):
    """An ``@file`` exclusion source could not be read."""

    stage = "configuration"


class BackupCancelledError(BackupError):
    """The run was cancelled before it finished."""

    stage = "cancelled"


@dataclass(frozen=True)
class DownloadFailure:
    """A single file that could not be downloaded."""

    path: str
    """Remote path of the file"""

    error: BaseException
    """Error raised while downloading it"""

    def __str__(self) -> str:
        return f"{self.path}: {self.error}"


class DownloadError(BackupError):
    """One or more downloads failed.

    Attributes:
        failures: Every failed file with its error
    """

    stage = "download"

    def __init__(self, failures: list[DownloadFailure]):
        self.failures = list(failures)
        first = self.failures[0] if self.failures else None
        message = f"{len(self.failures)} file(s) failed to download"
        if first is not None:
            message += f" (first: {first})"
        super().__init__(message)


class OrphanCleanupError(BackupError):
    """Walking or deleting inside the backup directory failed."""

    stage = "orphan cleanup"

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class LocalFileError(Exception):
    """A filesystem operation inside the backup directory failed.

    Attributes:
        operation: What was being done (e.g. "create directory")
        path: Local path involved
    """

    def __init__(self, operation: str, path: str, error: OSError):
        self.operation = operation
        self.path = path
        self.error = error
        reason = error.strerror or str(error)
        super().__init__(f"Failed to {operation} {path}: {reason}")
