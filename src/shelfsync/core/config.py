"""Shared configuration classes for shelfsync.

This module defines the remote connection settings and the tuning knobs of
the sync engine. Both are plain dataclasses so they can be built from the
CLI config file or directly in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from shelfsync.core.types import ConflictStrategy, SyncDirection

# Mirrored tables in dependency order: referenced tables sync first so that
# a fresh mirror never holds a borrowing whose book has not arrived yet.
SYNC_TABLES: tuple[str, ...] = (
    "categories",
    "classes",
    "books",
    "students",
    "staff",
    "borrowings",
    "fines",
)


@dataclass
class RemoteConfig:
    """Configuration for connecting to the remote PostgREST backend.

    Attributes:
        url: Base URL of the project (e.g., "https://abc.supabase.co").
        api_key: API key sent as both ``apikey`` and bearer token.
        timeout: Request timeout in seconds.
        connect_timeout: Connection establishment timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    url: str
    api_key: str
    timeout: float = 30.0
    connect_timeout: float = 10.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize the base URL."""
        self.url = self.url.rstrip("/")

    @property
    def rest_url(self) -> str:
        """Get the REST endpoint root."""
        return f"{self.url}/rest/v1"

    @property
    def is_secure(self) -> bool:
        """Check if the remote uses HTTPS."""
        return self.url.startswith("https://")


@dataclass
class SyncSettings:
    """Tuning parameters for the synchronizer.

    Attributes:
        page_size: Maximum records requested per pull page.
        max_retries: Retry attempts for transient network errors.
        initial_backoff: First retry delay in seconds.
        max_backoff: Upper bound for the retry delay in seconds.
        backoff_multiplier: Growth factor of the delay between attempts.
        max_workers: Tables synchronized concurrently.
        storage_retries: Attempts for a local batch that raised StorageError.
        sync_interval: Period of the background sync job.
        dedup_interval: Period of the audit log deduplication job.
        tables: Tables handled by ``sync_all``, in sync order.
        directions: Per-table sync direction; unlisted tables sync both ways.
        conflict_strategy: How conflicts are settled by default.
        conflict_strategies: Per-table overrides of ``conflict_strategy``.
    """

    page_size: int = 1000
    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0
    max_workers: int = 4
    storage_retries: int = 3
    sync_interval: timedelta = timedelta(seconds=30)
    dedup_interval: timedelta = timedelta(hours=24)
    tables: tuple[str, ...] = field(default=SYNC_TABLES)
    directions: dict[str, SyncDirection] = field(default_factory=dict)
    conflict_strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS
    conflict_strategies: dict[str, ConflictStrategy] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate bounds and table names, and coerce enum values."""
        if self.page_size < 1:
            raise ValueError(f"page_size must be positive, got {self.page_size}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        unknown = (
            set(self.tables) | set(self.directions) | set(self.conflict_strategies)
        ) - set(SYNC_TABLES)
        if unknown:
            raise ValueError(f"Unknown tables: {', '.join(sorted(unknown))}")
        self.directions = {
            table: SyncDirection(value) for table, value in self.directions.items()
        }
        self.conflict_strategy = ConflictStrategy(self.conflict_strategy)
        self.conflict_strategies = {
            table: ConflictStrategy(value)
            for table, value in self.conflict_strategies.items()
        }

    def direction_for(self, table: str) -> SyncDirection:
        """Get the sync direction of a table."""
        return self.directions.get(table, SyncDirection.TWO_WAY)

    def strategy_for(self, table: str) -> ConflictStrategy:
        """Get the conflict strategy of a table."""
        return self.conflict_strategies.get(table, self.conflict_strategy)
