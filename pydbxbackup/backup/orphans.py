"""Removal of local files that no longer exist remotely."""

import logging
import os
from pathlib import Path

from ..exceptions import OrphanCleanupError
from ..models import RemoteEntry
from .planner import local_path_for
from .stats import BackupStats

logger = logging.getLogger(__name__)


class OrphanReconciler:
    """Deletes regular files in the backup directory that the listing lacks.

    Directories are never removed, even when they end up empty.
    """

    def __init__(self, stats: BackupStats):
        self.stats = stats

    def expected_paths(
        self, entries: list[RemoteEntry], backup_dir: Path
    ) -> set[str]:
        """Local paths implied by the (filtered) remote listing."""
        return {str(local_path_for(backup_dir, entry.path)) for entry in entries}

    def reconcile(self, entries: list[RemoteEntry], backup_dir: Path) -> int:
        """Walk the backup tree and delete every orphaned file.

        Deletions done before an error are kept.

        Args:
            entries: Filtered remote listing of this run
            backup_dir: Root of the local backup

        Returns:
            Number of files deleted

        Raises:
            OrphanCleanupError: If the tree cannot be walked or a file
                cannot be deleted
        """
        expected = self.expected_paths(entries, backup_dir)
        deleted = 0

        def on_walk_error(error: OSError) -> None:
            raise OrphanCleanupError(
                f"Error walking backup directory: {error}",
                path=error.filename,
            ) from error

        logger.debug(f"Checking {backup_dir} for files deleted remotely")
        for root, _dirs, files in os.walk(backup_dir, onerror=on_walk_error):
            for name in files:
                local_path = os.path.join(root, name)
                if local_path in expected:
                    continue
                if not os.path.isfile(local_path) or os.path.islink(local_path):
                    continue

                try:
                    os.remove(local_path)
                except OSError as e:
                    raise OrphanCleanupError(
                        f"Failed to delete {local_path}: {e}", path=local_path
                    ) from e

                self.stats.record_delete()
                deleted += 1
                logger.info(f"Deleted local file that no longer exists remotely: {local_path}")

        return deleted
