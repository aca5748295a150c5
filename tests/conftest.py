"""Shared pytest fixtures.

Provides a temporary local store and an in-memory remote implementing the
same table and system log operations as the PostgREST client.
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from shelfsync.client.audit import AuditLogger
from shelfsync.client.repository import LibraryRepository
from shelfsync.client.state import SyncStateTracker
from shelfsync.client.store import LocalStore
from shelfsync.client.sync.engine import Synchronizer
from shelfsync.client.sync.queue import ChangeQueue
from shelfsync.client.sync.types import RemoteRejectionError, TransientNetworkError
from shelfsync.core.config import SyncSettings


def _ts(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class FakeRemote:
    """In-memory remote backend with conditional writes and failure injection."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.events: list[dict[str, Any]] = []
        self.calls: list[tuple[str, str]] = []
        self.online = True
        self.closed = False
        self.dedup_calls = 0
        self._failures: dict[tuple[str, str | None], list[Exception]] = {}
        self.on_fetch: Any = None
        self.on_write: Any = None

    # === Test helpers ===

    def put(self, table: str, row: dict[str, Any]) -> None:
        """Seed or overwrite a remote row."""
        self.tables.setdefault(table, {})[row["id"]] = dict(row)

    def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Read a remote row."""
        return self.tables.get(table, {}).get(record_id)

    def fail(self, method: str, *errors: Exception, table: str | None = None) -> None:
        """Make the next calls to a method raise the given errors, in order.

        With ``table`` set, only calls for that table are affected.
        """
        self._failures.setdefault((method, table), []).extend(errors)

    def _enter(self, method: str, table: str = "") -> None:
        self.calls.append((method, table))
        pending = self._failures.get((method, table)) or self._failures.get((method, None))
        if pending:
            raise pending.pop(0)
        if not self.online:
            raise TransientNetworkError(f"{method}: remote offline")

    def _before_write(self, method: str, table: str, record_id: str) -> None:
        if self.on_write is not None:
            self.on_write(method, table, record_id)

    # === RemoteSource ===

    def fetch_changes(
        self,
        table: str,
        since: datetime,
        limit: int,
        after_id: str | None = None,
    ) -> list[dict[str, Any]]:
        self._enter("fetch_changes", table)
        rows = sorted(
            self.tables.get(table, {}).values(),
            key=lambda r: (_ts(r["updated_at"]), r["id"]),
        )
        if after_id is None:
            selected = [r for r in rows if _ts(r["updated_at"]) >= since]
        else:
            selected = [
                r
                for r in rows
                if _ts(r["updated_at"]) > since
                or (_ts(r["updated_at"]) == since and r["id"] > after_id)
            ]
        page = [dict(r) for r in selected[:limit]]
        if self.on_fetch is not None:
            self.on_fetch(table, page)
        return page

    def fetch_record(self, table: str, record_id: str) -> dict[str, Any] | None:
        self._enter("fetch_record", table)
        row = self.get(table, record_id)
        return dict(row) if row else None

    def insert_record(self, table: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._enter("insert_record", table)
        self._before_write("insert_record", table, payload["id"])
        if self.get(table, payload["id"]) is not None:
            raise RemoteRejectionError(table, payload["id"], "duplicate key", 409)
        self.put(table, payload)
        return dict(payload)

    def update_record(
        self,
        table: str,
        record_id: str,
        payload: dict[str, Any],
        updated_before: datetime,
    ) -> dict[str, Any]:
        self._enter("update_record", table)
        self._before_write("update_record", table, record_id)
        row = self.get(table, record_id)
        if row is None or _ts(row["updated_at"]) >= updated_before:
            raise RemoteRejectionError(table, record_id)
        row.update(payload)
        return dict(row)

    def delete_record(
        self, table: str, record_id: str, updated_before: datetime
    ) -> None:
        self._enter("delete_record", table)
        self._before_write("delete_record", table, record_id)
        row = self.get(table, record_id)
        if row is None or _ts(row["updated_at"]) >= updated_before:
            raise RemoteRejectionError(table, record_id, "no row deleted")
        del self.tables[table][record_id]

    def health_check(self) -> bool:
        return self.online

    # === AuditSink ===

    def log_system_event(
        self,
        action: str,
        description: str,
        severity: str,
        component: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        self._enter("log_system_event")
        self.events.append(
            {
                "action": action,
                "description": description,
                "severity": severity,
                "component": component,
                "metadata": metadata,
            }
        )
        return f"evt-{len(self.events)}"

    def clean_duplicate_logs(self) -> int:
        self._enter("clean_duplicate_logs")
        self.dedup_calls += 1
        return 0

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def store(tmp_path: Path) -> Generator[LocalStore, None, None]:
    """Create a temporary local store."""
    store = LocalStore(tmp_path / "library.db")
    yield store
    store.close()


@pytest.fixture
def audit(store: LocalStore) -> AuditLogger:
    """Create an audit logger without remote forwarding."""
    return AuditLogger(store)


@pytest.fixture
def queue(store: LocalStore) -> ChangeQueue:
    """Create a change queue over the test store."""
    return ChangeQueue(store)


@pytest.fixture
def tracker(store: LocalStore) -> SyncStateTracker:
    """Create a cursor tracker over the test store."""
    return SyncStateTracker(store)


@pytest.fixture
def repository(store: LocalStore, queue: ChangeQueue) -> LibraryRepository:
    """Create a local-first repository."""
    return LibraryRepository(store, queue)


@pytest.fixture
def remote() -> FakeRemote:
    """Create an empty in-memory remote."""
    return FakeRemote()


@pytest.fixture
def settings() -> SyncSettings:
    """Engine settings with small pages and no backoff delay."""
    return SyncSettings(
        page_size=3,
        max_retries=2,
        initial_backoff=0.0,
        max_backoff=0.0,
        max_workers=2,
    )


@pytest.fixture
def synchronizer(
    remote: FakeRemote,
    store: LocalStore,
    audit: AuditLogger,
    queue: ChangeQueue,
    tracker: SyncStateTracker,
    settings: SyncSettings,
) -> Synchronizer:
    """Create a synchronizer wired to the fake remote."""
    return Synchronizer(
        remote,
        store,
        audit=audit,
        queue=queue,
        tracker=tracker,
        settings=settings,
        sleep=lambda _: None,
    )
