"""CLI output formatting functions.

This module contains functions for displaying pull, push and import
results, pending conflicts and sync status on the command line.
"""

from typing import TYPE_CHECKING, Optional

import click

if TYPE_CHECKING:
    from contact_sync.sync.conflict import PendingConflict
    from contact_sync.sync.contact import Contact
    from contact_sync.sync.importer import MergeResult
    from contact_sync.sync.pull import PullResult
    from contact_sync.sync.push import PushResult
    from contact_sync.sync.results import ItemError

# Maximum number of items listed per section before truncating
MAX_LISTED = 10


def show_errors(errors: list["ItemError"]) -> None:
    """Display per-item errors, truncated after MAX_LISTED."""
    if not errors:
        return
    click.echo(f"\n{click.style('Errors:', fg='red')} {len(errors)}")
    for error in errors[:MAX_LISTED]:
        click.echo(f"  ! {error}")
    if len(errors) > MAX_LISTED:
        click.echo(f"  ... and {len(errors) - MAX_LISTED} more")


def show_conflicts(conflicts: list["PendingConflict"], title: str = "Conflicts") -> None:
    """Display pending conflicts with the ids used by the resolve command."""
    if not conflicts:
        return
    click.echo(f"\n{click.style(title + ':', fg='magenta')} {len(conflicts)}")
    for conflict in conflicts[:MAX_LISTED]:
        click.echo(
            f"  #{conflict.id} {conflict.native_id} "
            f"(contact {conflict.contact_id}, "
            f"detected {conflict.detected_at:%Y-%m-%d %H:%M})"
        )
    if len(conflicts) > MAX_LISTED:
        click.echo(f"  ... and {len(conflicts) - MAX_LISTED} more")


def show_pull_result(result: "PullResult") -> None:
    """Display the outcome of a pull."""
    if result.aborted:
        click.echo(click.style(f"Pull aborted: {result.error}", fg="red"), err=True)
        return

    click.echo(f"\n=== Pull: {result.connection_id} ===")
    click.echo(f"  Created:   {result.created}")
    click.echo(f"  Linked:    {result.linked}")
    click.echo(f"  Updated:   {result.updated}")
    click.echo(f"  Unchanged: {result.unchanged}")
    click.echo(f"  Orphaned:  {result.orphaned}")
    show_conflicts(result.conflicts)
    show_errors(result.errors)


def show_push_result(result: "PushResult") -> None:
    """Display the outcome of a push."""
    click.echo(f"\n=== Push: {result.connection_id} ===")
    click.echo(f"  Created:  {result.created}")
    click.echo(f"  Updated:  {result.updated}")
    click.echo(f"  Skipped:  {result.skipped}")
    if result.orphaned:
        click.echo(f"  Orphaned: {result.orphaned}")
    show_conflicts(result.conflicts)
    show_errors(result.errors)


def show_merge_result(result: "MergeResult") -> None:
    """Display the outcome of a scrape batch import."""
    click.echo(f"\n=== Import: {result.connection_id} ===")
    click.echo(f"  Created:   {result.created}")
    click.echo(f"  Enriched:  {result.enriched}")
    click.echo(f"  Unchanged: {result.unchanged}")
    show_errors(result.errors)


def show_status(status: dict[str, object]) -> None:
    """Display contact counts and per-connection state."""
    counts = status.get("contacts") or {}
    click.echo("=== Contacts ===\n")
    if isinstance(counts, dict):
        for key in ("active", "hidden", "orphaned", "dirty"):
            click.echo(f"  {key.capitalize() + ':':<10} {counts.get(key, 0)}")

    click.echo("\n=== Connections ===\n")
    connections = status.get("connections") or []
    if not connections:
        click.echo("  No connections configured.")
        return

    for connection in connections:  # type: ignore[attr-defined]
        state = connection["status"]
        color = {"idle": "green", "syncing": "cyan", "error": "red"}.get(state)
        click.echo(
            f"{connection['id']} ({connection['type']}): "
            f"{click.style(state, fg=color)}"
        )
        click.echo(f"  Last pull:  {_format_time(connection['last_pull_at'])}")
        if connection["type"] == "carddav":
            click.echo(f"  Last push:  {_format_time(connection['last_push_at'])}")
        click.echo(f"  Members:    {connection['member_count']}")
        if connection["pending_conflicts"]:
            click.echo(
                click.style(
                    f"  Conflicts:  {connection['pending_conflicts']}", fg="magenta"
                )
            )


def print_contact(contact: "Contact") -> None:
    """Print a single contact's summary."""
    click.echo(f"  - {contact.display_name} [{contact.state.value}]")
    if contact.emails:
        click.echo(f"      Emails: {', '.join(contact.emails[:2])}")
    if contact.phones:
        click.echo(f"      Phones: {', '.join(contact.phones[:2])}")
    if contact.organization:
        click.echo(f"      Org: {contact.organization}")


def _format_time(value: Optional[object]) -> str:
    if value is None:
        return "Never"
    return f"{value:%Y-%m-%d %H:%M:%S}"
