"""Conflict commands for shelfsync CLI.

Commands:
- conflicts: List conflicts recorded during sync
- settle: Settle a conflict held for manual resolution
"""

from __future__ import annotations

import sys

import click

from shelfsync.client.cli.context import open_components
from shelfsync.client.sync.conflict import ConflictLog
from shelfsync.client.sync.types import SyncError, Winner
from shelfsync.core.config import SYNC_TABLES


@click.command()
@click.option(
    "--table",
    "-t",
    type=click.Choice(SYNC_TABLES),
    help="Only list conflicts of this table.",
)
@click.option("--all", "-a", "show_all", is_flag=True, help="Include settled conflicts.")
def conflicts(table: str | None, show_all: bool) -> None:
    """List conflicts awaiting settlement (or all with --all)."""
    with open_components(require_remote=False) as components:
        rows = ConflictLog(components.store).list_conflicts(
            table, include_resolved=show_all
        )

    if not rows:
        click.echo("No conflicts" if show_all else "No open conflicts")
        return

    click.echo(f"{'ID':>5}  {'TABLE':<12} {'RECORD':<20} {'TYPE':<16} {'STRATEGY':<12} WINNER")
    for row in rows:
        winner = row.winner if row.resolved else "open"
        click.echo(
            f"{row.id:>5}  {row.table_name:<12} {row.record_id:<20} "
            f"{row.conflict_type:<16} {row.strategy:<12} {winner}"
        )


@click.command()
@click.argument("conflict_id", type=int)
@click.option(
    "--keep",
    type=click.Choice(["local", "remote"]),
    required=True,
    help="Version that survives.",
)
def settle(conflict_id: int, keep: str) -> None:
    """Settle an open conflict by keeping the local or the remote version.

    Keeping the local version queues it again for the next sync.
    """
    with open_components() as components:
        synchronizer = components.synchronizer
        assert synchronizer is not None
        try:
            synchronizer.settle_conflict(
                conflict_id, Winner.LOCAL if keep == "local" else Winner.REMOTE
            )
        except (ValueError, SyncError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Conflict {conflict_id} settled: {keep} version kept")
