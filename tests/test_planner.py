"""Unit tests for the skip decision and backup planning."""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydbxbackup.backup.planner import (
    BackupAction,
    decide,
    local_path_for,
    plan,
    should_skip,
)
from pydbxbackup.models import RemoteEntry

REMOTE_TIME = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


def _write(path: Path, content: bytes, mtime: datetime) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    ts = mtime.timestamp()
    os.utime(path, (ts, ts))
    return path


def _file(path: str = "/a.txt", size: int = 5, modified_at=REMOTE_TIME) -> RemoteEntry:
    return RemoteEntry(
        path=path, name=path.rsplit("/", 1)[-1], size=size, modified_at=modified_at
    )


class TestLocalPathFor:
    """Tests for local_path_for."""

    def test_strips_leading_slash(self):
        assert local_path_for(Path("/backup"), "/docs/a.txt") == Path(
            "/backup/docs/a.txt"
        )

    def test_paths_are_unique_per_entry(self):
        paths = {local_path_for(Path("/b"), p) for p in ["/a", "/a/b", "/b"]}
        assert len(paths) == 3


class TestShouldSkip:
    """Tests for should_skip."""

    def test_missing_local_file_is_downloaded(self, tmp_path):
        assert should_skip(tmp_path / "a.txt", _file()) is False

    def test_same_size_and_mtime_is_skipped(self, tmp_path):
        local = _write(tmp_path / "a.txt", b"hello", REMOTE_TIME)
        assert should_skip(local, _file(size=5)) is True

    def test_local_newer_is_skipped(self, tmp_path):
        """Test that a locally newer file is kept even if sizes differ."""
        local = _write(tmp_path / "a.txt", b"hi", REMOTE_TIME + timedelta(hours=1))
        assert should_skip(local, _file(size=5)) is True

    def test_remote_newer_is_downloaded(self, tmp_path):
        local = _write(tmp_path / "a.txt", b"hello", REMOTE_TIME - timedelta(hours=1))
        assert should_skip(local, _file(size=5)) is False

    def test_same_mtime_different_size_is_downloaded(self, tmp_path):
        local = _write(tmp_path / "a.txt", b"hello world", REMOTE_TIME)
        assert should_skip(local, _file(size=5)) is False

    def test_unknown_remote_mtime_is_never_skipped(self, tmp_path):
        local = _write(tmp_path / "a.txt", b"hello", REMOTE_TIME)
        assert should_skip(local, _file(size=5, modified_at=None)) is False

    def test_directory_at_target_is_not_skipped(self, tmp_path):
        """Test that a newer directory where the file belongs is no local copy."""
        target = tmp_path / "report"
        target.mkdir()
        ts = (REMOTE_TIME + timedelta(days=1)).timestamp()
        os.utime(target, (ts, ts))

        assert should_skip(target, _file("/report", size=5)) is False
        assert decide(_file("/report", size=5), tmp_path).action == (
            BackupAction.DOWNLOAD
        )


class TestPlan:
    """Tests for decide and plan."""

    def test_folder_creates_directory(self, tmp_path):
        folder = RemoteEntry(path="/docs", name="docs", is_folder=True)
        decision = decide(folder, tmp_path)

        assert decision.action == BackupAction.CREATE_DIRECTORY
        assert decision.local_path == tmp_path / "docs"
        # No I/O for folders
        assert not (tmp_path / "docs").exists()

    def test_new_file_is_downloaded(self, tmp_path):
        decision = decide(_file("/docs/a.txt"), tmp_path)
        assert decision.action == BackupAction.DOWNLOAD
        assert decision.reason == "New remote file"

    def test_changed_file_is_downloaded(self, tmp_path):
        _write(tmp_path / "a.txt", b"old", REMOTE_TIME - timedelta(days=1))
        decision = decide(_file("/a.txt"), tmp_path)
        assert decision.action == BackupAction.DOWNLOAD
        assert decision.reason == "Remote file changed"

    def test_unchanged_file_is_skipped(self, tmp_path):
        _write(tmp_path / "a.txt", b"hello", REMOTE_TIME)
        decision = decide(_file("/a.txt", size=5), tmp_path)
        assert decision.action == BackupAction.SKIP

    def test_plan_keeps_input_order(self, tmp_path):
        entries = [
            RemoteEntry(path="/docs", name="docs", is_folder=True),
            _file("/docs/a.txt"),
            _file("/b.txt"),
        ]

        decisions = plan(entries, tmp_path)

        assert [d.entry for d in decisions] == entries
        assert [d.action for d in decisions] == [
            BackupAction.CREATE_DIRECTORY,
            BackupAction.DOWNLOAD,
            BackupAction.DOWNLOAD,
        ]
