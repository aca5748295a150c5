"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and its subclasses: the error taxonomy of the sync engine
- ChangeOp, ChangeEntry: Change queue types
- Cursor: Per-table sync position
- CyclePhase, TableOutcome, TableSyncResult, SyncResult: Cycle results
- Winner, Resolution: Conflict resolution outcome
- SyncStatus: Observable engine status
- RemoteSource, AuditSink: Protocols implemented by the remote client
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum, IntEnum, auto
from typing import Any, Protocol

from shelfsync.core.types import SyncState

# Cursor value of a table that has never been synced.
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Smallest step between two versions of a record.
TICK = timedelta(microseconds=1)


class SyncError(Exception):
    """Base exception for sync errors."""


class StorageError(SyncError):
    """Local store I/O or transaction failure.

    The whole batch that raised it must be retried; nothing was committed.
    """


class TransientNetworkError(SyncError):
    """Timeout, connection failure or retryable HTTP status from the remote."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteRejectionError(SyncError):
    """The remote refused a write because its version is not older than ours.

    Attributes:
        table: Table of the rejected write.
        record_id: Primary key of the rejected record.
        status_code: HTTP status when the rejection came from a status code.
    """

    def __init__(
        self,
        table: str,
        record_id: str,
        message: str = "stale version",
        status_code: int | None = None,
    ) -> None:
        self.table = table
        self.record_id = record_id
        self.status_code = status_code
        super().__init__(f"Remote rejected write to {table}/{record_id}: {message}")


class ConflictError(SyncError):
    """Both sides changed the same record since the last sync.

    Raised while pushing so the conflict can be routed to the resolver.

    Attributes:
        table: Table of the conflicting record.
        record_id: Primary key of the conflicting record.
        remote: Current remote version, or None if the remote no longer has it.
    """

    def __init__(
        self, table: str, record_id: str, remote: dict[str, Any] | None
    ) -> None:
        self.table = table
        self.record_id = record_id
        self.remote = remote
        super().__init__(f"Conflict on {table}/{record_id}")


class RecordValidationError(SyncError):
    """A record does not fit the closed schema of its table."""

    def __init__(self, table: str, record_id: str | None, detail: str) -> None:
        self.table = table
        self.record_id = record_id
        self.detail = detail
        super().__init__(f"Invalid {table} record {record_id or '<no id>'}: {detail}")


class SyncCancelledError(SyncError):
    """A cycle observed a cancellation request."""


# =============================================================================
# Change Queue Types
# =============================================================================


class ChangeOp(str, Enum):
    """Kind of local mutation recorded in the change queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ChangeEntry:
    """A pending local change, possibly coalesced from several mutations.

    Attributes:
        table: Table of the changed record.
        record_id: Primary key of the changed record.
        op: Net operation to push.
        payload: Latest full record payload (None for deletes).
        updated_at: Local timestamp of the latest mutation.
        seqs: Queue sequence numbers covered by this entry, ascending.
        base_updated_at: Version of the record the first mutation was made
            on, or None if the record was created locally.
    """

    table: str
    record_id: str
    op: ChangeOp
    payload: dict[str, Any] | None
    updated_at: datetime
    seqs: tuple[int, ...]
    base_updated_at: datetime | None = None

    @property
    def seq(self) -> int:
        """Sequence number of the latest mutation."""
        return self.seqs[-1]

    def restamped(self, updated_at: datetime) -> ChangeEntry:
        """Copy of this change carrying a new ``updated_at``.

        Used to push a local winner over a remote version that is not older,
        since every remote write is conditional on the version.
        """
        payload = self.payload
        if payload is not None:
            payload = {**payload, "updated_at": updated_at.isoformat()}
        return replace(self, updated_at=updated_at, payload=payload)

    def based_on(self, version: datetime) -> ChangeEntry:
        """Copy of this change made on top of another remote version."""
        return replace(self, base_updated_at=version)

    @property
    def write_guard(self) -> datetime:
        """Bound the remote version must stay below for a write to apply.

        A change made on a known version only applies while the remote
        still holds that version or an older one.
        """
        if self.base_updated_at is not None:
            return self.base_updated_at + TICK
        return self.updated_at

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"ChangeEntry({self.op.value}, {self.table}/{self.record_id}, "
            f"seqs={list(self.seqs)})"
        )


@dataclass
class Cursor:
    """Sync position of a table.

    Attributes:
        table: Table name.
        last_sync: Highest remote ``updated_at`` durably applied.
        synced_records: Records applied by the last completed cycle.
        completed_at: Wall-clock time of the last successful cycle.
    """

    table: str
    last_sync: datetime = EPOCH
    synced_records: int = 0
    completed_at: datetime | None = None

    @property
    def never_synced(self) -> bool:
        """Check if the table was never synced."""
        return self.last_sync == EPOCH


# =============================================================================
# Cycle Types
# =============================================================================


class CyclePhase(IntEnum):
    """Phase of a table's sync cycle."""

    IDLE = auto()
    PULLING = auto()
    RESOLVING = auto()
    PUSHING = auto()
    ADVANCING = auto()
    FAILED = auto()


class TableOutcome(IntEnum):
    """Final outcome of a table's sync cycle."""

    SUCCEEDED = auto()
    FAILED = auto()
    CANCELLED = auto()
    SKIPPED = auto()


@dataclass
class TableSyncResult:
    """Result of one table's sync cycle."""

    table: str
    outcome: TableOutcome = TableOutcome.SUCCEEDED
    pulled: int = 0
    applied: int = 0
    pushed: int = 0
    conflicts: int = 0
    rejected: int = 0
    error: str | None = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        """Check if the cycle completed."""
        return self.outcome == TableOutcome.SUCCEEDED


@dataclass
class SyncResult:
    """Result of a sync run over several tables."""

    tables: dict[str, TableSyncResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        """Tables whose cycle completed."""
        return [name for name, r in self.tables.items() if r.succeeded]

    @property
    def failed(self) -> list[str]:
        """Tables whose cycle failed."""
        return [
            name for name, r in self.tables.items() if r.outcome == TableOutcome.FAILED
        ]

    @property
    def has_failures(self) -> bool:
        """Check if any table failed."""
        return len(self.failed) > 0


class Winner(IntEnum):
    """Side whose version survives a conflict."""

    LOCAL = auto()
    REMOTE = auto()


@dataclass
class Resolution:
    """Outcome of a resolved conflict.

    Attributes:
        winner: Surviving side, or None while the conflict awaits manual
            settlement.
        entry: Local change to push if it wins. Restamped past the remote
            version when a strategy lets an older local change win.
        remote: Remote version involved (None if gone remotely).
        conflict_id: Row of the conflict in the local conflict log, if kept.
    """

    winner: Winner | None
    entry: ChangeEntry
    remote: dict[str, Any] | None
    conflict_id: int | None = None

    @property
    def local_wins(self) -> bool:
        """Check if the local change must be (re-)pushed."""
        return self.winner == Winner.LOCAL

    @property
    def deferred(self) -> bool:
        """Check if the local change is held until settled by hand."""
        return self.winner is None


@dataclass
class SyncStatus:
    """Observable state of the synchronizer."""

    is_online: bool = False
    is_syncing: bool = False
    last_sync: datetime | None = None
    last_error: str | None = None
    initial_sync_completed: bool = False

    @property
    def state(self) -> SyncState:
        """Summarize the status as a single state."""
        if self.is_syncing:
            return SyncState.SYNCING
        if self.last_error is not None:
            return SyncState.ERROR
        if not self.is_online:
            return SyncState.OFFLINE
        return SyncState.IDLE


# =============================================================================
# Remote Protocols
# =============================================================================


class RemoteSource(Protocol):
    """Remote backend operations used by the synchronizer."""

    def fetch_changes(
        self,
        table: str,
        since: datetime,
        limit: int,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]: ...

    def fetch_record(self, table: str, record_id: str) -> dict[str, Any] | None: ...

    def insert_record(self, table: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    def update_record(
        self,
        table: str,
        record_id: str,
        payload: dict[str, Any],
        updated_before: datetime,
    ) -> dict[str, Any]: ...

    def delete_record(
        self, table: str, record_id: str, updated_before: datetime
    ) -> None: ...

    def health_check(self) -> bool: ...


class AuditSink(Protocol):
    """Remote system log used by the audit logger."""

    def log_system_event(
        self,
        action: str,
        description: str,
        severity: str,
        component: str,
        metadata: dict[str, Any] | None = None,
    ) -> str: ...

    def clean_duplicate_logs(self) -> int: ...
