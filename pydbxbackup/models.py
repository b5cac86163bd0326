"""Data models for Dropbox metadata."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .utils import parse_iso_timestamp


@dataclass(frozen=True)
class RemoteEntry:
    """One file or folder as reported by a Dropbox listing.

    Entries are produced fresh on every run and never change afterwards.
    """

    path: str
    """Remote path, lower-cased, starting with a forward slash"""

    name: str
    """Display name (original case)"""

    is_folder: bool = False
    """True for folders"""

    size: int = 0
    """Size in bytes (always 0 for folders)"""

    modified_at: Optional[datetime] = None
    """Client modification time in UTC, None when unknown"""

    content_hash: str = ""
    """Dropbox content hash"""

    rev: str = ""
    """Revision identifier"""

    @property
    def has_modification_time(self) -> bool:
        """Whether the remote store reported a modification time."""
        return self.modified_at is not None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "RemoteEntry":
        """Build an entry from a Dropbox metadata object.

        Args:
            data: Metadata dict as returned by ``files/list_folder``
                or the ``Dropbox-API-Result`` header of a download

        Returns:
            RemoteEntry instance
        """
        tag = data.get(".tag", "file")

        if tag == "folder":
            return cls(
                path=data.get("path_lower", ""),
                name=data.get("name", ""),
                is_folder=True,
            )

        if tag != "file":
            # Deleted entries and unknown tags carry no usable metadata
            return cls(path="/unknown", name="unknown")

        return cls(
            path=data.get("path_lower", ""),
            name=data.get("name", ""),
            size=int(data.get("size", 0)),
            modified_at=parse_iso_timestamp(data.get("client_modified")),
            content_hash=data.get("content_hash", ""),
            rev=data.get("rev", ""),
        )
