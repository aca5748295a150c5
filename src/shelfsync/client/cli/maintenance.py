"""Inspection and maintenance commands for shelfsync CLI.

Commands:
- status: Show cursors, pending changes and local row counts
- reset: Force a full resync of one or more tables
- clean-logs: Collapse duplicate audit events locally and remotely
- diagnose: Check the local database and the remote connection
"""

from __future__ import annotations

import sys
from datetime import datetime

import click

from shelfsync.client.api import APIError
from shelfsync.client.cli.config import get_database_path, is_configured, load_config
from shelfsync.client.cli.context import open_components
from shelfsync.client.sync.conflict import ConflictLog
from shelfsync.client.sync.types import SyncError
from shelfsync.core.config import SYNC_TABLES


def _format_time(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value is not None else "never"


@click.command()
def status() -> None:
    """Show the sync state of every table."""
    with open_components(require_remote=False) as components:
        counts = components.store.counts()
        click.echo(f"Database: {components.store.path}")
        click.echo(f"Remote:   {load_config().get('url', 'not configured')}")
        click.echo("")
        click.echo(f"{'TABLE':<12} {'ROWS':>6} {'PENDING':>8}  LAST SYNC")
        for table in SYNC_TABLES:
            cursor = components.tracker.get_cursor(table)
            last_sync = "never" if cursor.never_synced else _format_time(cursor.last_sync)
            click.echo(
                f"{table:<12} {counts[table]:>6} "
                f"{components.queue.count(table):>8}  {last_sync}"
            )
        open_conflicts = ConflictLog(components.store).count_open()
        if open_conflicts:
            click.echo(
                f"\n{open_conflicts} conflicts awaiting settlement (shelfsync conflicts)"
            )
        pending_events = components.audit.pending_count()
        if pending_events:
            click.echo(f"\n{pending_events} audit events waiting to be forwarded")


@click.command()
@click.option(
    "--table",
    "-t",
    "tables",
    multiple=True,
    type=click.Choice(SYNC_TABLES),
    help="Table to reset (repeatable). Defaults to every table.",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def reset(tables: tuple[str, ...], yes: bool) -> None:
    """Clear local rows and rewind cursors to force a full resync.

    Pending local changes are kept and pushed on the next sync.
    """
    targets = tables or SYNC_TABLES
    if not yes:
        click.confirm(
            f"This will clear local rows of: {', '.join(targets)}. Continue?",
            abort=True,
        )

    with open_components(require_remote=False) as components:
        for table in targets:
            removed = components.tracker.reset(table)
            click.echo(f"{table}: {removed} local rows cleared, cursor rewound")


@click.command("clean-logs")
def clean_logs() -> None:
    """Collapse consecutive duplicate audit events."""
    with open_components(require_remote=False) as components:
        try:
            local, remote = components.audit.clean_duplicates()
        except (SyncError, APIError) as e:
            click.echo(f"Error: remote deduplication failed: {e}", err=True)
            sys.exit(1)
        click.echo(f"Collapsed {local} local and {remote} remote duplicate events")


@click.command()
def diagnose() -> None:
    """Check the local database and the remote connection."""
    click.echo(f"Database: {get_database_path()}")
    healthy = True

    with open_components(require_remote=False) as components:
        counts = components.store.counts()
        for table in SYNC_TABLES:
            click.echo(f"  {table:<12} {counts[table]} rows")
        click.echo(f"  pending changes: {components.queue.count()}")

        if not is_configured():
            click.echo("Remote: not configured")
            healthy = False
        else:
            assert components.synchronizer is not None
            click.echo(f"Remote: {load_config()['url']}")
            if components.synchronizer.check_connectivity():
                click.echo("  connection OK")
            else:
                click.echo("  connection FAILED")
                healthy = False
            click.echo(f"  sync state: {components.synchronizer.status.state.value}")

    if not healthy:
        sys.exit(1)
