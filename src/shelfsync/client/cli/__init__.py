"""Command-line interface for shelfsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store the remote connection settings
- sync: Synchronize the local mirror with the remote
- conflicts: List conflicts recorded during sync
- settle: Settle a conflict held for manual resolution
- status: Show cursors, pending changes and row counts
- reset: Force a full resync of one or more tables
- clean-logs: Collapse duplicate audit events
- diagnose: Check the local database and the remote connection
"""

from __future__ import annotations

import click

from shelfsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_database_path,
    load_config,
    save_config,
)
from shelfsync.client.cli.conflicts import conflicts, settle
from shelfsync.client.cli.configure import configure
from shelfsync.client.cli.context import setup_logging
from shelfsync.client.cli.maintenance import clean_logs, diagnose, reset, status
from shelfsync.client.cli.sync import sync


@click.group()
@click.version_option(package_name="shelfsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """shelfsync - Offline sync for the library database."""
    setup_logging(verbose)


# Setup
cli.add_command(configure)

# Sync commands
cli.add_command(sync)
cli.add_command(conflicts)
cli.add_command(settle)

# Maintenance commands
cli.add_command(status)
cli.add_command(reset)
cli.add_command(clean_logs)
cli.add_command(diagnose)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "get_config_dir",
    "get_config_file",
    "get_database_path",
    "load_config",
    "save_config",
]
