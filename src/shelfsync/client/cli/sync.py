"""Sync command for shelfsync CLI.

Commands:
- sync: Synchronize the local mirror with the remote backend
"""

from __future__ import annotations

import sys
import time

import click

from shelfsync.client.cli.context import open_components
from shelfsync.client.sync.scheduler import SyncScheduler
from shelfsync.client.sync.types import SyncResult, TableOutcome
from shelfsync.core.config import SYNC_TABLES

_OUTCOME_LABELS = {
    TableOutcome.SUCCEEDED: "ok",
    TableOutcome.FAILED: "FAILED",
    TableOutcome.CANCELLED: "cancelled",
    TableOutcome.SKIPPED: "skipped",
}


def print_result(result: SyncResult) -> None:
    """Print one line per table of a sync run."""
    for table, outcome in result.tables.items():
        line = (
            f"{table:<12} {_OUTCOME_LABELS[outcome.outcome]:<9} "
            f"pulled={outcome.pulled} applied={outcome.applied} "
            f"pushed={outcome.pushed} conflicts={outcome.conflicts}"
        )
        if outcome.rejected:
            line += f" rejected={outcome.rejected}"
        if outcome.error:
            line += f" ({outcome.error})"
        click.echo(line)


@click.command()
@click.option(
    "--table",
    "-t",
    "tables",
    multiple=True,
    type=click.Choice(SYNC_TABLES),
    help="Table to sync (repeatable). Defaults to every table.",
)
@click.option("--watch", "-w", is_flag=True, help="Keep syncing in the background.")
def sync(tables: tuple[str, ...], watch: bool) -> None:
    """Synchronize the local mirror with the remote.

    Pulls remote changes, resolves conflicts with pending local changes and
    pushes the local changes that remain. Use --watch to keep syncing
    periodically until interrupted.
    """
    with open_components() as components:
        synchronizer = components.synchronizer
        assert synchronizer is not None

        if not watch:
            result = synchronizer.sync_all(tables or None)
            print_result(result)
            if result.has_failures:
                sys.exit(1)
            return

        scheduler = SyncScheduler(synchronizer, components.audit, tables or None)
        interval = synchronizer.settings.sync_interval.total_seconds()
        click.echo(f"Syncing every {interval:.0f}s. Press Ctrl+C to stop.")
        print_result(scheduler.run_now())
        scheduler.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            scheduler.stop()
