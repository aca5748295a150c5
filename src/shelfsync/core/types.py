"""Shared types for shelfsync.

This module defines enums used across the store, the sync engine and the CLI.
"""

from __future__ import annotations

from enum import Enum


class SyncState(str, Enum):
    """Overall sync state of the client.

    Reported by the synchronizer status and shown by ``shelfsync status``.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


class Severity(str, Enum):
    """Severity of an audit event, mirrored by the remote system log."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class SyncDirection(str, Enum):
    """Which way a table's changes flow during a sync cycle."""

    TWO_WAY = "two_way"
    PULL_ONLY = "pull_only"
    PUSH_ONLY = "push_only"

    @property
    def pulls(self) -> bool:
        """Check if remote changes are pulled."""
        return self != SyncDirection.PUSH_ONLY

    @property
    def pushes(self) -> bool:
        """Check if local changes are pushed."""
        return self != SyncDirection.PULL_ONLY


class ConflictStrategy(str, Enum):
    """How a conflict between a local change and the remote is settled.

    ``NEWEST_WINS`` is last-write-wins on ``updated_at`` with ties going to
    the remote. ``MANUAL`` holds the local change and records the conflict
    until it is settled by hand.
    """

    NEWEST_WINS = "newest_wins"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MANUAL = "manual"
