"""Statistics collected during a backup run."""

import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from ..output import OutputFormatter
from ..utils import format_bytes, format_duration


@dataclass(frozen=True)
class StatsSnapshot:
    """Read-only copy of the run statistics."""

    total_files: int = 0
    total_folders: int = 0
    downloaded_files: int = 0
    skipped_files: int = 0
    deleted_files: int = 0
    total_bytes: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def duration(self) -> float:
        """Run time in seconds (0 until the run has finished)."""
        if self.start_time is None or self.end_time is None:
            return 0.0
        return max((self.end_time - self.start_time).total_seconds(), 0.0)

    @property
    def total_items(self) -> int:
        return self.total_files + self.total_folders

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        data["duration"] = self.duration
        return data


class BackupStats:
    """Thread-safe accumulator for one backup run.

    Download workers update counters concurrently, so every mutation goes
    through a method that holds the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_files = 0
        self._total_folders = 0
        self._downloaded_files = 0
        self._skipped_files = 0
        self._deleted_files = 0
        self._total_bytes = 0
        self._start_time: Optional[datetime] = None
        self._end_time: Optional[datetime] = None

    def start(self) -> None:
        with self._lock:
            self._start_time = datetime.now(timezone.utc)
            self._end_time = None

    def finish(self) -> None:
        with self._lock:
            self._end_time = datetime.now(timezone.utc)

    def set_totals(self, files: int, folders: int) -> None:
        """Record how many files and folders the listing returned."""
        with self._lock:
            self._total_files = files
            self._total_folders = folders

    def record_download(self, num_bytes: int) -> None:
        with self._lock:
            self._downloaded_files += 1
            self._total_bytes += num_bytes

    def record_skip(self) -> None:
        with self._lock:
            self._skipped_files += 1

    def record_delete(self) -> None:
        with self._lock:
            self._deleted_files += 1

    def snapshot(self) -> StatsSnapshot:
        """Return a consistent copy of the current values."""
        with self._lock:
            return StatsSnapshot(
                total_files=self._total_files,
                total_folders=self._total_folders,
                downloaded_files=self._downloaded_files,
                skipped_files=self._skipped_files,
                deleted_files=self._deleted_files,
                total_bytes=self._total_bytes,
                start_time=self._start_time,
                end_time=self._end_time,
            )


def display_count_summary(stats: StatsSnapshot, output: OutputFormatter) -> None:
    """Print the file count block."""
    rows = [
        ("Total files processed", str(stats.total_files)),
        ("Total folders processed", str(stats.total_folders)),
        ("Total items", str(stats.total_items)),
        ("Files downloaded", str(stats.downloaded_files)),
        ("Files skipped", str(stats.skipped_files)),
    ]
    if stats.deleted_files > 0:
        rows.append(("Files deleted", str(stats.deleted_files)))
    output.print("")
    output.print_summary("File Count Summary", rows)


def display_size_summary(stats: StatsSnapshot, output: OutputFormatter) -> None:
    """Print the transferred size block."""
    rows = [("Total bytes processed", format_bytes(stats.total_bytes))]
    if stats.duration > 0:
        rate = int(stats.total_bytes / stats.duration)
        rows.append(("Average transfer rate", f"{format_bytes(rate)}/s"))
        rows.append(("Duration", format_duration(stats.duration)))
    output.print("")
    output.print_summary("Size Summary", rows)
