"""Utility functions for pydbxbackup."""

import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

# =============================================================================
# Constants
# =============================================================================

# Default number of simultaneous downloads
DEFAULT_MAX_CONCURRENCY: int = 5

# Retry configuration for transient HTTP errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 2.0  # seconds

# Chunk size used when streaming downloads to disk
DOWNLOAD_CHUNK_SIZE: int = 64 * 1024

# Units used by format_bytes, in powers of 1024
_BYTE_UNITS = "KMGTPE"


# =============================================================================
# Timestamp parsing utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp from the Dropbox API.

    Args:
        timestamp_str: Timestamp string (e.g., "2025-01-15T10:30:00Z")

    Returns:
        Timezone-aware datetime in UTC, or None if missing or unparsable

    Examples:
        >>> parse_iso_timestamp("2025-01-15T10:30:00Z")
        datetime.datetime(2025, 1, 15, 10, 30, tzinfo=datetime.timezone.utc)
        >>> parse_iso_timestamp("") is None
        True
    """
    if not timestamp_str:
        return None

    # The 'Z' suffix indicates UTC time
    if timestamp_str.endswith("Z"):
        timestamp_str = timestamp_str[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(timestamp_str)
    except (ValueError, TypeError):
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_bytes(size_bytes: int) -> str:
    """Format a byte count in human-readable base-1024 units.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string

    Examples:
        >>> format_bytes(0)
        '0 B'
        >>> format_bytes(512)
        '512 B'
        >>> format_bytes(1536)
        '1.5 KB'
        >>> format_bytes(1048576)
        '1.0 MB'
    """
    unit = 1024
    if size_bytes < unit:
        return f"{size_bytes} B"

    div, exp = unit, 0
    n = size_bytes // unit
    while n >= unit and exp < len(_BYTE_UNITS) - 1:
        div *= unit
        exp += 1
        n //= unit

    return f"{size_bytes / div:.1f} {_BYTE_UNITS[exp]}B"


def format_duration(seconds: float) -> str:
    """Format a duration like "1m 5.2s" or "0.8s"."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{int(minutes)}m {secs:.1f}s"
    hours, minutes = divmod(minutes, 60)
    return f"{int(hours)}h {int(minutes)}m {secs:.0f}s"


# =============================================================================
# Glob matching utilities
# =============================================================================


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a glob pattern to a regular expression.

    ``*`` matches any run of characters except ``/``, ``?`` matches a
    single character except ``/`` and ``[...]`` is a character class
    (``[!...]`` or ``[^...]`` negates it). A backslash escapes the next
    character. There is no recursive ``**``.

    Raises:
        ValueError: If the pattern has an unterminated character class
    """
    parts: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            parts.append("[^/]*")
        elif c == "?":
            parts.append("[^/]")
        elif c == "[":
            j = i + 1
            negate = j < n and pattern[j] in "!^"
            if negate:
                j += 1
            start = j
            # A leading ']' is part of the class
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                raise ValueError(f"Unterminated character class in {pattern!r}")
            body = "".join(ch if ch == "-" else re.escape(ch) for ch in pattern[start:j])
            parts.append(f"[{'^' if negate else ''}{body}]")
            i = j
        elif c == "\\" and i + 1 < n:
            i += 1
            parts.append(re.escape(pattern[i]))
        else:
            parts.append(re.escape(c))
        i += 1
    return re.compile("".join(parts), re.DOTALL)


def glob_match(pattern: str, name: str) -> bool:
    """Match a name against a glob pattern (case-sensitive).

    Malformed patterns never match.

    Examples:
        >>> glob_match("*.tmp", "file.tmp")
        True
        >>> glob_match("*.tmp", "cache/file.tmp")
        False
    """
    try:
        regex = glob_to_regex(pattern)
    except ValueError:
        return False
    return regex.fullmatch(name) is not None
