"""Per-entry backup decisions."""

import os
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..models import RemoteEntry


class BackupAction(str, Enum):
    """Actions that can be taken for a remote entry."""

    SKIP = "skip"
    """Local copy is current (or newer)"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    CREATE_DIRECTORY = "create_directory"
    """Folder entry; created on demand when nested files are written"""


@dataclass(frozen=True)
class BackupDecision:
    """Represents a decision about how to back up one entry."""

    action: BackupAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    entry: RemoteEntry
    """Remote entry the decision is about"""

    local_path: Path
    """Where the entry lives inside the backup directory"""


def local_path_for(backup_dir: Path, remote_path: str) -> Path:
    """Map a remote path into the backup directory.

    Examples:
        >>> local_path_for(Path("/backup"), "/docs/a.txt")
        PosixPath('/backup/docs/a.txt')
    """
    return backup_dir / remote_path.lstrip("/")


def should_skip(local_path: Path, entry: RemoteEntry) -> bool:
    """Decide whether an existing local copy makes the download unnecessary.

    The local file is kept when it is newer than the remote one, or when
    size and modification time both match exactly. Entries without a remote
    modification time are always downloaded, and so is a target that is
    not a regular file.

    Args:
        local_path: Target path in the backup directory
        entry: Remote file entry

    Returns:
        True if the download can be skipped
    """
    try:
        st = os.stat(local_path)
    except OSError:
        return False

    if not stat.S_ISREG(st.st_mode):
        return False

    if not entry.has_modification_time:
        return False

    remote_mtime = entry.modified_at.timestamp()

    # A locally newer copy is never overwritten
    if st.st_mtime > remote_mtime:
        return True

    return st.st_size == entry.size and st.st_mtime == remote_mtime


def decide(entry: RemoteEntry, backup_dir: Path) -> BackupDecision:
    """Build the decision for a single entry."""
    local_path = local_path_for(backup_dir, entry.path)

    if entry.is_folder:
        return BackupDecision(
            action=BackupAction.CREATE_DIRECTORY,
            reason="Folder",
            entry=entry,
            local_path=local_path,
        )

    if should_skip(local_path, entry):
        return BackupDecision(
            action=BackupAction.SKIP,
            reason="Local file is up to date",
            entry=entry,
            local_path=local_path,
        )

    if local_path.exists():
        reason = "Remote file changed"
    else:
        reason = "New remote file"
    return BackupDecision(
        action=BackupAction.DOWNLOAD,
        reason=reason,
        entry=entry,
        local_path=local_path,
    )


def plan(entries: list[RemoteEntry], backup_dir: Path) -> list[BackupDecision]:
    """Decide an action for every entry.

    Args:
        entries: Filtered remote entries
        backup_dir: Root of the local backup

    Returns:
        One decision per entry, in input order
    """
    return [decide(entry, backup_dir) for entry in entries]
