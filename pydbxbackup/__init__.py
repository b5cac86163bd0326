"""pydbxbackup - back up a Dropbox account to a local directory."""

from .api import DropboxClient
from .backup import BackupEngine
from .config import Config
from .exceptions import (
    BackupAuthenticationError,
    BackupCancelledError,
    BackupError,
    DownloadError,
    DropboxAPIError,
    DropboxAuthenticationError,
    DropboxConfigError,
    DropboxDownloadError,
    DropboxInvalidResponseError,
    DropboxNetworkError,
    DropboxNotFoundError,
    DropboxPermissionError,
    DropboxRateLimitError,
    ExclusionFileError,
    ListingError,
    LocalFileError,
    OrphanCleanupError,
)
from .models import RemoteEntry
from .utils import format_bytes

__version__ = "0.1.0"

__all__ = [
    "BackupEngine",
    "Config",
    "DropboxClient",
    "RemoteEntry",
    "BackupError",
    "BackupAuthenticationError",
    "BackupCancelledError",
    "DownloadError",
    "ExclusionFileError",
    "ListingError",
    "LocalFileError",
    "OrphanCleanupError",
    "DropboxAPIError",
    "DropboxAuthenticationError",
    "DropboxConfigError",
    "DropboxDownloadError",
    "DropboxInvalidResponseError",
    "DropboxNetworkError",
    "DropboxNotFoundError",
    "DropboxPermissionError",
    "DropboxRateLimitError",
    "format_bytes",
]
