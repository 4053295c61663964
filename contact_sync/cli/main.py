"""
Command-line interface for contact_sync.

Usage:
    # Show help
    contact-sync --help

    # Pull an address book, then push local edits back
    contact-sync pull home
    contact-sync push home

    # Merge a LinkedIn scrape batch
    contact-sync import linkedin-main connections.json

    # Review and resolve conflicts
    contact-sync conflicts home
    contact-sync resolve 3 --keep remote
"""

import json
import sys
from pathlib import Path

import click

from contact_sync import __version__
from contact_sync.api.carddav import NotAuthenticated
from contact_sync.cli.formatters import (
    print_contact,
    show_conflicts,
    show_merge_result,
    show_pull_result,
    show_push_result,
    show_status,
)
from contact_sync.config import ConfigError, ConfigLoader, load_connections
from contact_sync.storage.db import ContactStore, StoreError
from contact_sync.sync.conflict import ConflictNotFoundError, ResolutionStrategy
from contact_sync.sync.engine import (
    SyncEngine,
    SyncInProgressError,
    UnknownConnectionError,
)
from contact_sync.sync.importer import ScrapedProfile
from contact_sync.sync.matcher import MatchConfig
from contact_sync.sync.normalizer import ParseError
from contact_sync.sync.pull import DEFAULT_MAX_WORKERS
from contact_sync.utils import DEFAULT_CONFIG_DIR, resolve_config_dir
from contact_sync.utils.logging import (
    cleanup_old_logs,
    get_logger,
    get_matching_log_path,
    setup_logging,
    setup_matching_logger,
)
from contact_sync.utils.normalization import DEFAULT_PHONE_REGION

# Default configuration file
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Errors reported to the user without a traceback
USER_ERRORS = (
    ConfigError,
    ConflictNotFoundError,
    SyncInProgressError,
    UnknownConnectionError,
)


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / "config.yaml"


def build_engine(ctx: click.Context) -> SyncEngine:
    """
    Create the sync engine from the loaded configuration.

    Raises:
        ConfigError: If a connection entry is invalid
    """
    config = ctx.obj.get("config", {})
    config_dir: Path = ctx.obj["config_dir"]

    connections = load_connections(config)
    timeout = float(config.get("request_timeout", 30))
    clients = {
        c.id: c.build_client(timeout) for c in connections.values() if c.is_carddav
    }
    import_connections = [c.id for c in connections.values() if not c.is_carddav]

    if config.get("store_path"):
        store_path = Path(config["store_path"]).expanduser()
    else:
        store_path = ConfigLoader(config_dir=config_dir).default_store_path()
    store_path.parent.mkdir(parents=True, exist_ok=True)
    store = ContactStore(str(store_path))
    store.initialize()

    match_config = MatchConfig(
        default_region=config.get("default_region", DEFAULT_PHONE_REGION),
        fuzzy_name_threshold=config.get("fuzzy_name_threshold"),
    )
    return SyncEngine(
        store=store,
        clients=clients,
        import_connections=import_connections,
        match_config=match_config,
        max_workers=config.get("max_workers", DEFAULT_MAX_WORKERS),
    )


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def start_matching_log(ctx: click.Context) -> None:
    setup_matching_logger(log_file=get_matching_log_path(ctx.obj["log_dir"]))


@click.group()
@click.version_option(version=__version__, prog_name="contact-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CONTACT_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.contact-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CONTACT_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    CardDAV contact sync.

    Pulls CardDAV address books into a local contact store, pushes local
    edits back, and merges scraped LinkedIn connections without creating
    duplicates.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Show error but don't fail - commands report missing connections
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = Path(config["log_dir"]).expanduser() if config.get("log_dir") else None
    log_dir = log_dir or resolved_config_dir / "logs"
    ctx.obj["log_dir"] = log_dir

    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Sync Commands
# =============================================================================


@cli.command("pull")
@click.argument("connection")
@click.pass_context
def pull_command(ctx: click.Context, connection: str) -> None:
    """
    Pull an address book into the local store.

    New remote contacts are created or linked to matching local ones,
    changed ones are updated, and contacts missing remotely are marked
    orphaned. Remote changes to locally edited contacts become conflicts.

    Example:

        contact-sync pull home
    """
    logger = get_logger(__name__)
    try:
        engine = build_engine(ctx)
        start_matching_log(ctx)
        result = engine.pull(connection)
    except NotAuthenticated as e:
        fail(f"Authentication failed for {connection}: {e}")
        return
    except USER_ERRORS as e:
        fail(str(e))
        return
    except StoreError as e:
        logger.exception(f"Pull failed: {e}")
        fail(str(e))
        return

    show_pull_result(result)
    if result.aborted:
        sys.exit(1)


@cli.command("push")
@click.argument("connection")
@click.option(
    "--contact",
    "contact_ids",
    multiple=True,
    help="Only push this contact id (repeatable).",
)
@click.pass_context
def push_command(
    ctx: click.Context, connection: str, contact_ids: tuple[str, ...]
) -> None:
    """
    Push local edits to an address book.

    Writes are conditional on the last seen ETag; members changed remotely
    in the meantime are not overwritten but recorded as conflicts.

    Examples:

        contact-sync push home

        contact-sync push home --contact 3f2a... --contact 9b1c...
    """
    logger = get_logger(__name__)
    try:
        engine = build_engine(ctx)
        result = engine.push(connection, list(contact_ids) or None)
    except NotAuthenticated as e:
        fail(f"Authentication failed for {connection}: {e}")
        return
    except USER_ERRORS as e:
        fail(str(e))
        return
    except StoreError as e:
        logger.exception(f"Push failed: {e}")
        fail(str(e))
        return

    show_push_result(result)


@cli.command("import")
@click.argument("connection")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_command(ctx: click.Context, connection: str, file: str) -> None:
    """
    Merge a scrape batch of LinkedIn connections.

    FILE is a JSON list. Each entry is either a flat profile
    ({"profile_id": ..., "first_name": ..., "emails": [...]}) or a raw
    LinkedIn pair ({"element": {...}, "profile": {...}}).

    Example:

        contact-sync import linkedin-main connections.json
    """
    try:
        batch = load_profiles(Path(file))
    except ValueError as e:
        fail(f"Invalid import file: {e}")
        return

    try:
        engine = build_engine(ctx)
        start_matching_log(ctx)
        result = engine.merge_import(batch, connection)
    except USER_ERRORS as e:
        fail(str(e))
        return

    show_merge_result(result)


def load_profiles(path: Path) -> list[ScrapedProfile]:
    """
    Read scraped profiles from a JSON file.

    Raises:
        ValueError: If the file is not a JSON list of profile objects
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(str(e)) from e

    if not isinstance(data, list):
        raise ValueError(f"expected a JSON list, got {type(data).__name__}")

    profiles = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ValueError(f"entry {index} is not an object")
        if "element" in entry:
            profiles.append(
                ScrapedProfile.from_linkedin_data(entry["element"], entry.get("profile"))
            )
        else:
            profiles.append(ScrapedProfile.from_dict(entry))
    return profiles


# =============================================================================
# Status and Conflict Commands
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show contact counts and per-connection sync state.

    Example:

        contact-sync status
    """
    click.echo(f"Configuration directory: {ctx.obj['config_dir']}\n")
    try:
        engine = build_engine(ctx)
    except USER_ERRORS as e:
        fail(str(e))
        return
    show_status(engine.status())


@cli.command("conflicts")
@click.argument("connection", required=False)
@click.pass_context
def conflicts_command(ctx: click.Context, connection: str | None) -> None:
    """
    List pending conflicts, optionally for one connection.

    Example:

        contact-sync conflicts home
    """
    try:
        engine = build_engine(ctx)
        conflicts = engine.list_conflicts(connection)
    except USER_ERRORS as e:
        fail(str(e))
        return

    if not conflicts:
        click.echo("No pending conflicts.")
        return
    show_conflicts(conflicts, title="Pending conflicts")


@cli.command("resolve")
@click.argument("conflict_id", type=int)
@click.option(
    "--keep",
    required=True,
    type=click.Choice([s.value for s in ResolutionStrategy], case_sensitive=False),
    help="Which side wins: local edits or the remote record.",
)
@click.pass_context
def resolve_command(ctx: click.Context, conflict_id: int, keep: str) -> None:
    """
    Resolve a pending conflict.

    --keep local keeps the local edits; the next push overwrites the remote
    record. --keep remote discards the local edits.

    Example:

        contact-sync resolve 3 --keep remote
    """
    try:
        engine = build_engine(ctx)
        contact = engine.resolve_conflict(
            conflict_id, ResolutionStrategy(keep.lower())
        )
    except USER_ERRORS as e:
        fail(str(e))
        return
    except ParseError as e:
        fail(f"Stored remote record cannot be parsed: {e}")
        return

    click.echo(
        click.style(f"Conflict {conflict_id} resolved ({keep} wins).", fg="green")
    )
    print_contact(contact)


# =============================================================================
# Hide Commands
# =============================================================================


@cli.command("hide")
@click.argument("contact_ids", nargs=-1, required=True)
@click.pass_context
def hide_command(ctx: click.Context, contact_ids: tuple[str, ...]) -> None:
    """
    Hide contacts. Hidden contacts are never pushed or orphaned.

    Example:

        contact-sync hide 3f2a... 9b1c...
    """
    try:
        engine = build_engine(ctx)
    except USER_ERRORS as e:
        fail(str(e))
        return
    count = engine.hide_contacts(contact_ids)
    click.echo(f"Hid {count} of {len(contact_ids)} contacts.")


@cli.command("unhide")
@click.argument("contact_ids", nargs=-1, required=True)
@click.pass_context
def unhide_command(ctx: click.Context, contact_ids: tuple[str, ...]) -> None:
    """
    Make hidden contacts active again.

    Example:

        contact-sync unhide 3f2a...
    """
    try:
        engine = build_engine(ctx)
    except USER_ERRORS as e:
        fail(str(e))
        return
    count = engine.unhide_contacts(contact_ids)
    click.echo(f"Unhid {count} of {len(contact_ids)} contacts.")
