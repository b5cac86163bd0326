"""Exclusion rules for remote paths.

Three kinds of rules are supported:

* ``@path/to/file``: read further rules from a file, one per line
* ``name/``: a directory rule (trailing slash), excluding the directory
  and everything below it, wherever the directory appears
* anything else: a glob matched against the base name, then against
  the full remote path

A path is excluded as soon as any rule matches.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from ..exceptions import ExclusionFileError
from ..models import RemoteEntry
from ..utils import glob_match

logger = logging.getLogger(__name__)

INCLUDE_MARKER = "@"
DIRECTORY_MARKER = "/"


class RuleKind(str, Enum):
    """How a rule is matched."""

    INCLUDE_FILE = "include_file"
    """Rules read from an external file"""

    DIRECTORY = "directory"
    """Directory prefix or segment"""

    GLOB = "glob"
    """Glob on the base name, then on the full path"""


@dataclass(frozen=True)
class ExclusionRule:
    """A single parsed exclusion rule."""

    kind: RuleKind
    pattern: str
    sub_rules: tuple["ExclusionRule", ...] = field(default=())
    """Rules loaded from the referenced file (INCLUDE_FILE only)"""

    def matches(self, path: str) -> bool:
        """Check whether this rule excludes a remote path.

        Args:
            path: Lower-cased remote path starting with "/"
        """
        if self.kind == RuleKind.INCLUDE_FILE:
            return any(rule.matches(path) for rule in self.sub_rules)

        if self.kind == RuleKind.DIRECTORY:
            # Trailing slash so "/temp" (the directory itself) matches "temp/"
            candidate = path.rstrip("/") + "/"
            if candidate.startswith(self.pattern):
                return True
            if self.pattern.startswith("/"):
                return False
            return "/" + self.pattern in candidate

        base_name = path.rstrip("/").rsplit("/", 1)[-1]
        return glob_match(self.pattern, base_name) or glob_match(self.pattern, path)


def read_exclusion_file(path: Path) -> list[str]:
    """Read rule lines from a file.

    Lines are trimmed; blank lines and ``#`` comments are skipped.

    Raises:
        ExclusionFileError: If the file cannot be read
    """
    try:
        with open(path, encoding="utf-8") as f:
            lines = [line.strip() for line in f]
    except OSError as e:
        raise ExclusionFileError(f"Cannot read exclusion file {path}: {e}") from e
    return [line for line in lines if line and not line.startswith("#")]


def parse_rule(
    pattern: str,
    base_dir: Optional[Path] = None,
    _loading: frozenset[Path] = frozenset(),
) -> ExclusionRule:
    """Parse one pattern into an ExclusionRule.

    Args:
        pattern: Raw pattern text
        base_dir: Directory that relative ``@file`` paths are resolved
            against (defaults to the current directory)

    Raises:
        ExclusionFileError: If an ``@file`` cannot be read
    """
    if pattern.startswith(INCLUDE_MARKER):
        source = Path(pattern[len(INCLUDE_MARKER) :]).expanduser()
        if not source.is_absolute():
            source = (base_dir or Path.cwd()) / source
        source = source.resolve()

        if source in _loading:
            logger.warning(f"Ignoring recursive inclusion of exclusion file {source}")
            return ExclusionRule(kind=RuleKind.INCLUDE_FILE, pattern=pattern)

        lines = read_exclusion_file(source)
        sub_rules = tuple(
            parse_rule(line, base_dir=source.parent, _loading=_loading | {source})
            for line in lines
        )
        logger.debug(f"Loaded {len(sub_rules)} exclusion rule(s) from {source}")
        return ExclusionRule(
            kind=RuleKind.INCLUDE_FILE, pattern=pattern, sub_rules=sub_rules
        )

    # Remote paths are lower-cased, so patterns are too
    pattern = pattern.lower()
    if pattern.endswith(DIRECTORY_MARKER):
        return ExclusionRule(kind=RuleKind.DIRECTORY, pattern=pattern)
    return ExclusionRule(kind=RuleKind.GLOB, pattern=pattern)


def should_exclude(path: str, rules: Iterable[ExclusionRule]) -> bool:
    """Return True if any rule matches the path."""
    return any(rule.matches(path) for rule in rules)


class ExclusionFilter:
    """Applies a set of exclusion patterns to remote entries.

    Examples:
        >>> f = ExclusionFilter(["*.tmp", "cache/"])
        >>> f.should_exclude("/docs/file.tmp")
        True
        >>> f.should_exclude("/docs/file.txt")
        False
    """

    def __init__(self, patterns: Optional[list[str]] = None):
        """Parse the patterns.

        Args:
            patterns: Raw exclusion patterns

        Raises:
            ExclusionFileError: If an ``@file`` pattern cannot be read
        """
        self.patterns = list(patterns or [])
        self.rules = [parse_rule(p.strip()) for p in self.patterns if p.strip()]

    def should_exclude(self, path: str) -> bool:
        """Check a single remote path."""
        return should_exclude(path, self.rules)

    def filter(self, entries: list[RemoteEntry]) -> list[RemoteEntry]:
        """Drop excluded entries.

        Without rules the input list is returned as-is.
        """
        if not self.rules:
            return entries

        kept: list[RemoteEntry] = []
        for entry in entries:
            if self.should_exclude(entry.path):
                logger.debug(f"Excluding file: {entry.path}")
            else:
                kept.append(entry)
        return kept
