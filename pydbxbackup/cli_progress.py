"""CLI progress display for backup runs.

Shows a Rich progress bar that advances once per file handled by the
download executor, whether it was downloaded, skipped or failed.
"""

from typing import Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .models import RemoteEntry


class BackupProgressDisplay:
    """Rich-based progress display for the download phase."""

    def __init__(self, total_files: int, console: Optional[Console] = None) -> None:
        """Initialize the progress display.

        Args:
            total_files: Number of files the executor will handle
            console: Console to render on (defaults to stdout)
        """
        self.total_files = total_files
        self.console = console
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def advance(self, entry: RemoteEntry) -> None:
        """Mark one file as handled."""
        if self._progress is None or self._task is None:
            return
        self._progress.update(
            self._task, advance=1, current_file=entry.name or entry.path
        )

    def __enter__(self) -> "BackupProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[cyan]{task.fields[current_file]}"),
            TimeElapsedColumn(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
        )
        self._progress.__enter__()
        self._task = self._progress.add_task(
            "Downloading", total=self.total_files, current_file=""
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        if self._progress is not None:
            if self._task is not None:
                self._progress.update(
                    self._task, description="Download complete", current_file=""
                )
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._task = None
