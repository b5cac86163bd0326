"""Configuration loading for pydbxbackup.

Settings are merged from several sources, later sources winning:

1. built-in defaults
2. the config file (``~/.config/pydbxbackup/config`` or ``--config``)
3. a ``.env`` file in the current working directory
4. process environment variables
5. command-line options
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .exceptions import DropboxConfigError
from .utils import DEFAULT_MAX_CONCURRENCY, DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY

logger = logging.getLogger(__name__)

ENV_CLIENT_ID = "DROPBOX_CLIENT_ID"
ENV_CLIENT_SECRET = "DROPBOX_CLIENT_SECRET"
ENV_ACCESS_TOKEN = "DROPBOX_ACCESS_TOKEN"
ENV_REFRESH_TOKEN = "DROPBOX_REFRESH_TOKEN"
ENV_BACKUP_FOLDER = "DROPBOX_BACKUP_FOLDER"
ENV_MAX_CONCURRENCY = "DROPBOX_MAX_CONCURRENCY"

VALID_LOG_LEVELS = ("debug", "info", "warn", "error")

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "pydbxbackup" / "config"


def read_env_file(path: Path) -> dict[str, str]:
    """Read a ``KEY=value`` file.

    Blank lines and ``#`` comments are ignored, an optional ``export``
    prefix is accepted and matching single or double quotes around the
    value are stripped.

    Args:
        path: File to read

    Returns:
        Mapping of keys to values (empty if the file does not exist)
    """
    values: dict[str, str] = {}
    if not path.is_file():
        return values

    with open(path, encoding="utf-8") as f:
        for line_no, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export ") :].lstrip()
            if "=" not in line:
                logger.warning(f"Ignoring malformed line {line_no} in {path}")
                continue
            key, value = line.split("=", 1)
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]
            values[key.strip()] = value

    return values


def save_tokens(path: Path, access_token: str, refresh_token: str = "") -> Path:
    """Write OAuth tokens into a ``KEY=value`` file, keeping other lines.

    Args:
        path: File to update (created if missing)
        access_token: New access token
        refresh_token: New refresh token (left untouched when empty)

    Returns:
        Path of the written file
    """
    updates = {ENV_ACCESS_TOKEN: access_token}
    if refresh_token:
        updates[ENV_REFRESH_TOKEN] = refresh_token

    lines: list[str] = []
    if path.is_file():
        with open(path, encoding="utf-8") as f:
            lines = f.read().splitlines()

    remaining = dict(updates)
    for i, line in enumerate(lines):
        key = line.split("=", 1)[0].strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        if key in remaining:
            lines[i] = f'{key}="{remaining.pop(key)}"'
    for key, value in remaining.items():
        lines.append(f'{key}="{value}"')

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    # Tokens are credentials
    os.chmod(path, 0o600)
    return path


@dataclass
class Config:
    """Runtime configuration of a backup run."""

    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""

    backup_dir: Path = field(default_factory=Path)
    delete: bool = False
    exclude: list[str] = field(default_factory=list)

    log_level: str = "error"
    show_count: bool = False
    show_size: bool = False

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry_attempts: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY

    @classmethod
    def load(
        cls,
        config_file: Optional[Path] = None,
        backup_dir: Optional[str] = None,
        log_level: Optional[str] = None,
        delete: bool = False,
        exclude: Optional[list[str]] = None,
        show_count: bool = False,
        show_size: bool = False,
        max_concurrency: Optional[int] = None,
        env_file: Optional[Path] = None,
        create_backup_dir: bool = True,
    ) -> "Config":
        """Create a configuration from files, environment and options.

        Args:
            config_file: Explicit config file (defaults to
                ~/.config/pydbxbackup/config)
            backup_dir: Backup directory from the command line
            log_level: Log level from the command line
            delete: Delete local files missing remotely
            exclude: Exclusion patterns from the command line
            show_count: Print the file count summary
            show_size: Print the size summary
            max_concurrency: Number of simultaneous downloads
            env_file: ``.env`` file to read (defaults to ./.env)
            create_backup_dir: Create the backup directory if missing

        Returns:
            Validated Config

        Raises:
            DropboxConfigError: If the configuration is incomplete or invalid
        """
        if config_file is not None and not config_file.is_file():
            raise DropboxConfigError(f"Config file not found: {config_file}")

        values: dict[str, str] = {}
        values.update(read_env_file(config_file or DEFAULT_CONFIG_PATH))
        values.update(read_env_file(env_file or Path.cwd() / ".env"))
        for key in (
            ENV_CLIENT_ID,
            ENV_CLIENT_SECRET,
            ENV_ACCESS_TOKEN,
            ENV_REFRESH_TOKEN,
            ENV_BACKUP_FOLDER,
            ENV_MAX_CONCURRENCY,
        ):
            if os.environ.get(key):
                values[key] = os.environ[key]

        cfg = cls(
            client_id=values.get(ENV_CLIENT_ID, ""),
            client_secret=values.get(ENV_CLIENT_SECRET, ""),
            access_token=values.get(ENV_ACCESS_TOKEN, ""),
            refresh_token=values.get(ENV_REFRESH_TOKEN, ""),
        )

        if ENV_MAX_CONCURRENCY in values:
            try:
                cfg.max_concurrency = int(values[ENV_MAX_CONCURRENCY])
            except ValueError as e:
                raise DropboxConfigError(
                    f"{ENV_MAX_CONCURRENCY} must be an integer, "
                    f"got {values[ENV_MAX_CONCURRENCY]!r}"
                ) from e

        if log_level:
            cfg.log_level = log_level.lower()
        if delete:
            cfg.delete = True
        if exclude:
            cfg.exclude = list(exclude)
        if max_concurrency is not None:
            cfg.max_concurrency = max_concurrency
        cfg.show_count = show_count
        cfg.show_size = show_size

        cfg.backup_dir = cls._resolve_backup_dir(
            backup_dir or values.get(ENV_BACKUP_FOLDER), create_backup_dir
        )

        cfg.validate()
        return cfg

    @staticmethod
    def _resolve_backup_dir(backup_dir: Optional[str], create: bool) -> Path:
        """Pick, absolutize and create the backup directory.

        Priority: command-line option > environment > timestamped default.
        """
        if not backup_dir:
            timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
            backup_dir = f"./dropbox_backup_{timestamp}"

        path = Path(backup_dir).expanduser().absolute()
        if create:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DropboxConfigError(
                    f"Failed to create backup directory {path}: {e}"
                ) from e
        return path

    def validate(self) -> None:
        """Check that the configuration is usable.

        Raises:
            DropboxConfigError: On the first problem found
        """
        if not self.client_id:
            raise DropboxConfigError(f"{ENV_CLIENT_ID} environment variable is required")
        if not self.client_secret:
            raise DropboxConfigError(
                f"{ENV_CLIENT_SECRET} environment variable is required"
            )
        if not str(self.backup_dir):
            raise DropboxConfigError("Backup directory is required")
        if self.log_level not in VALID_LOG_LEVELS:
            raise DropboxConfigError(
                f"Invalid log level: {self.log_level} "
                f"(must be debug, info, warn, or error)"
            )
        if self.max_concurrency < 1:
            raise DropboxConfigError(
                f"Max concurrency must be a positive integer, got {self.max_concurrency}"
            )
