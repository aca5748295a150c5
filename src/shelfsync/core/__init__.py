"""Core module - Shared configuration and enums."""

from shelfsync.core.config import SYNC_TABLES, RemoteConfig, SyncSettings
from shelfsync.core.types import ConflictStrategy, Severity, SyncDirection, SyncState

__all__ = [
    # Config
    "RemoteConfig",
    "SYNC_TABLES",
    "SyncSettings",
    # Types
    "ConflictStrategy",
    "Severity",
    "SyncDirection",
    "SyncState",
]
