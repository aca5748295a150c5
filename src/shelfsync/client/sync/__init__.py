"""Sync engine for the local library mirror.

Architecture:
    LibraryRepository -> ChangeQueue -> Synchronizer <- RemoteClient

Components:
- **ChangeQueue**: Durable, sequence-ordered queue of local mutations
- **Synchronizer**: Per-table pull / resolve / push / advance cycles
- **ConflictResolver**: Strategy-driven resolution (last-write-wins by
  default) with audit events and a local conflict log
- **SyncScheduler**: Background sync and audit log maintenance

The engine and scheduler are imported from their modules directly
(``shelfsync.client.sync.engine``), since they depend on the local store
and schemas which themselves use the types re-exported here.
"""

from shelfsync.client.sync.queue import ChangeQueue
from shelfsync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    backoff_delays,
    retry_with_backoff,
)
from shelfsync.client.sync.types import (
    EPOCH,
    ChangeEntry,
    ChangeOp,
    ConflictError,
    Cursor,
    CyclePhase,
    RecordValidationError,
    RemoteRejectionError,
    Resolution,
    StorageError,
    SyncCancelledError,
    SyncError,
    SyncResult,
    SyncStatus,
    TableOutcome,
    TableSyncResult,
    TransientNetworkError,
    Winner,
)

__all__ = [
    # Queue
    "ChangeQueue",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "backoff_delays",
    "retry_with_backoff",
    # Types
    "EPOCH",
    "ChangeEntry",
    "ChangeOp",
    "ConflictError",
    "Cursor",
    "CyclePhase",
    "RecordValidationError",
    "RemoteRejectionError",
    "Resolution",
    "StorageError",
    "SyncCancelledError",
    "SyncError",
    "SyncResult",
    "SyncStatus",
    "TableOutcome",
    "TableSyncResult",
    "TransientNetworkError",
    "Winner",
]
