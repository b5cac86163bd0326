"""CLI interface for pydbxbackup."""

import logging
import signal
import threading
from pathlib import Path
from typing import Any, Optional

import click

from . import __version__
from .api import DropboxClient
from .auth import AuthConfig, InteractiveAuth
from .backup import BackupEngine
from .config import VALID_LOG_LEVELS, Config, save_tokens
from .exceptions import BackupError, DropboxAPIError
from .output import OutputFormatter

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str) -> None:
    """Configure root logging for the given level name."""
    logging.basicConfig(
        level=LOG_LEVELS.get(level, logging.ERROR),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )
    logging.getLogger("pydbxbackup").setLevel(LOG_LEVELS.get(level, logging.ERROR))
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
@click.option(
    "--loglevel",
    type=click.Choice(VALID_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level (debug, info, warn, error; default: error)",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to configuration file",
)
@click.version_option(version=__version__, prog_name="pydbxbackup")
@click.pass_context
def main(
    ctx: Any,
    loglevel: Optional[str],
    verbose: bool,
    quiet: bool,
    json: bool,
    config_file: Optional[Path],
) -> None:
    """pydbxbackup - Back up your Dropbox account to a local directory."""
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["config_file"] = config_file

    if verbose:
        loglevel = "debug"
    ctx.obj["loglevel"] = loglevel.lower() if loglevel else None
    setup_logging(ctx.obj["loglevel"] or "error")


@main.command()
@click.option(
    "--backup-dir",
    "-d",
    default=None,
    help="Backup directory (overrides DROPBOX_BACKUP_FOLDER)",
)
@click.option(
    "--delete", is_flag=True, help="Delete local files that don't exist in Dropbox"
)
@click.option(
    "--exclude",
    "-e",
    multiple=True,
    help="Exclude pattern, repeatable (e.g. '*.tmp', 'temp/', '@filename')",
)
@click.option(
    "--count", is_flag=True, help="Display number of files and folders processed"
)
@click.option("--size", is_flag=True, help="Display total size of files processed")
@click.option(
    "--workers",
    "-j",
    type=click.IntRange(min=1),
    default=None,
    help="Number of parallel downloads (default: 5)",
)
@click.pass_context
def backup(
    ctx: Any,
    backup_dir: Optional[str],
    delete: bool,
    exclude: tuple[str, ...],
    count: bool,
    size: bool,
    workers: Optional[int],
) -> None:
    """Download every file in your Dropbox into the backup directory.

    Files that are already up to date locally are skipped. With --delete,
    local files that no longer exist in Dropbox are removed.

    Examples:
        pydbxbackup backup --backup-dir ~/dropbox-backup
        pydbxbackup --loglevel info backup --delete --exclude '*.tmp'
        pydbxbackup backup --exclude @~/.dropbox-exclude --count --size
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        cfg = Config.load(
            config_file=ctx.obj["config_file"],
            backup_dir=backup_dir,
            log_level=ctx.obj["loglevel"],
            delete=delete,
            exclude=list(exclude),
            show_count=count,
            show_size=size,
            max_concurrency=workers,
        )
    except DropboxAPIError as e:
        out.error(f"Failed to load configuration: {e}")
        ctx.exit(1)
        return

    setup_logging(cfg.log_level)
    logger.info(
        f"Starting Dropbox backup: backup_dir={cfg.backup_dir}, "
        f"delete={cfg.delete}, exclude_patterns={len(cfg.exclude)}"
    )

    cancel_event = threading.Event()

    def handle_interrupt(signum: int, frame: Any) -> None:
        out.warning("Interrupted, finishing running downloads...")
        cancel_event.set()

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGINT, handle_interrupt)

    try:
        with DropboxClient(
            client_id=cfg.client_id,
            client_secret=cfg.client_secret,
            access_token=cfg.access_token,
            refresh_token=cfg.refresh_token,
            max_retries=cfg.retry_attempts,
            retry_delay=cfg.retry_delay,
        ) as client:
            engine = BackupEngine(cfg, client, output=out)
            stats = engine.run(cancel_event=cancel_event)
    except BackupError as e:
        out.error(f"Backup failed during {e.stage}: {e}")
        ctx.exit(1)
        return
    except DropboxAPIError as e:
        out.error(f"Backup failed: {e}")
        ctx.exit(1)
        return
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    if out.json_output:
        out.output_json(stats.to_dict())
        return

    logger.info("Backup completed successfully")
    out.success(
        f"Backup complete: {stats.downloaded_files} downloaded, "
        f"{stats.skipped_files} skipped, {stats.deleted_files} deleted"
    )


@main.command()
@click.option(
    "--save/--no-save",
    default=False,
    help="Write the tokens to ./.env",
)
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=8080,
    show_default=True,
    help="Port of the local OAuth2 callback server",
)
@click.option(
    "--no-browser",
    is_flag=True,
    help="Only print the authorization URL instead of opening a browser",
)
@click.pass_context
def auth(ctx: Any, save: bool, port: int, no_browser: bool) -> None:
    """Authenticate with Dropbox using OAuth2.

    Opens your web browser and guides you through the authorization. The
    resulting tokens are printed as .env lines (and written to ./.env with
    --save).

    DROPBOX_CLIENT_ID and DROPBOX_CLIENT_SECRET must be set, in the
    environment or in your .env file. Get them from
    https://www.dropbox.com/developers/apps
    """
    out: OutputFormatter = ctx.obj["out"]
    if ctx.obj["loglevel"] is None:
        setup_logging("info")

    try:
        cfg = Config.load(config_file=ctx.obj["config_file"], create_backup_dir=False)
    except DropboxAPIError as e:
        out.error(
            f"{e}\n\nPlease set DROPBOX_CLIENT_ID and DROPBOX_CLIENT_SECRET in your "
            f".env file.\nGet these credentials from: "
            f"https://www.dropbox.com/developers/apps"
        )
        ctx.exit(1)
        return

    auth_config = AuthConfig(
        client_id=cfg.client_id,
        client_secret=cfg.client_secret,
        redirect_url=f"http://localhost:{port}/callback",
    )

    out.info("Starting Dropbox OAuth2 authentication...")
    try:
        token = InteractiveAuth(
            auth_config, open_browser=not no_browser, output=out
        ).authenticate()
    except DropboxAPIError as e:
        out.error(f"Authentication failed: {e}")
        ctx.exit(1)
        return

    if out.json_output:
        out.output_json(
            {
                "access_token": token.access_token,
                "refresh_token": token.refresh_token,
                "expiry": token.expiry.isoformat() if token.expiry else None,
            }
        )
    else:
        out.success("Authentication successful!")
        out.print("")
        out.print("Add these tokens to your .env file:")
        out.print("")
        out.print(f'DROPBOX_ACCESS_TOKEN="{token.access_token}"')
        if token.refresh_token:
            out.print(f'DROPBOX_REFRESH_TOKEN="{token.refresh_token}"')
        out.print("")

    if save:
        path = save_tokens(Path.cwd() / ".env", token.access_token, token.refresh_token)
        out.success(f"Tokens saved to {path}")


if __name__ == "__main__":
    main()
