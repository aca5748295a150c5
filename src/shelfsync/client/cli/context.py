"""Component wiring shared by CLI commands.

Commands build the store, remote client and engine through ``open_components``
so that every command uses the same configuration and closes what it opens.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import click

from shelfsync.client.api import RemoteClient
from shelfsync.client.audit import AuditLogger
from shelfsync.client.cli.config import (
    get_database_path,
    is_configured,
    load_config,
    remote_config_from,
    sync_settings_from,
)
from shelfsync.client.state import SyncStateTracker
from shelfsync.client.store import LocalStore
from shelfsync.client.sync.engine import Synchronizer
from shelfsync.client.sync.queue import ChangeQueue

CLI_HANDLER_NAME = "shelfsync-cli"


def setup_logging(verbose: bool = False) -> None:
    """Configure the shelfsync logger tree to output to stderr.

    Args:
        verbose: Log at DEBUG instead of INFO.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    root_logger = logging.getLogger("shelfsync")
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Replace the handler of a previous invocation, whose stream may be gone
    for existing in list(root_logger.handlers):
        if existing.get_name() == CLI_HANDLER_NAME:
            root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(CLI_HANDLER_NAME)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def create_remote(config: dict[str, object]) -> RemoteClient:
    """Create the remote client from the config file contents."""
    return RemoteClient(remote_config_from(config))


@dataclass
class Components:
    """Everything a command may need, built from the config file."""

    store: LocalStore
    queue: ChangeQueue
    tracker: SyncStateTracker
    audit: AuditLogger
    remote: RemoteClient | None
    synchronizer: Synchronizer | None


@contextmanager
def open_components(require_remote: bool = True) -> Iterator[Components]:
    """Open the local store and, if configured, the remote and engine.

    Args:
        require_remote: Exit with an error if no remote is configured.

    Yields:
        The wired components; closed when the block exits.
    """
    config = load_config()
    if require_remote and not is_configured():
        click.echo("Error: No remote configured. Run 'shelfsync configure' first.", err=True)
        sys.exit(1)

    store = LocalStore(get_database_path())
    remote = create_remote(config) if is_configured() else None
    try:
        audit = AuditLogger(store, sink=remote)
        queue = ChangeQueue(store)
        tracker = SyncStateTracker(store)
        synchronizer = None
        if remote is not None:
            synchronizer = Synchronizer(
                remote,
                store,
                audit=audit,
                queue=queue,
                tracker=tracker,
                settings=sync_settings_from(config),
            )
        yield Components(store, queue, tracker, audit, remote, synchronizer)
    finally:
        if remote is not None:
            remote.close()
        store.close()
