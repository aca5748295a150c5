"""Tests for the synchronizer."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from shelfsync.client.schemas import parse_record
from shelfsync.client.store import model_for
from shelfsync.client.sync.engine import Synchronizer
from shelfsync.client.sync.types import (
    ChangeOp,
    CyclePhase,
    TableOutcome,
    TransientNetworkError,
    Winner,
)
from shelfsync.core.config import SyncSettings
from shelfsync.core.types import ConflictStrategy, SyncDirection, SyncState

if TYPE_CHECKING:
    from conftest import FakeRemote

    from shelfsync.client.audit import AuditLogger
    from shelfsync.client.state import SyncStateTracker
    from shelfsync.client.store import LocalStore
    from shelfsync.client.sync.queue import ChangeQueue

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=UTC)


def at(minutes: int) -> datetime:
    """Timestamp ``minutes`` after T0."""
    return T0 + timedelta(minutes=minutes)


def book_row(
    record_id: str,
    updated_at: datetime,
    available: int = 1,
    total: int = 5,
    **extra: Any,
) -> dict[str, Any]:
    """Remote representation of a book."""
    row = {
        "id": record_id,
        "title": f"Title {record_id}",
        "author": "Author",
        "total_copies": total,
        "available_copies": available,
        "created_at": T0.isoformat(),
        "updated_at": updated_at.isoformat(),
    }
    row.update(extra)
    return row


def local_edit(
    store: LocalStore,
    queue: ChangeQueue,
    table: str,
    row: dict[str, Any],
    op: ChangeOp = ChangeOp.UPDATE,
) -> None:
    """Write a record locally and queue it, with the row's own timestamp."""
    record = parse_record(table, row)
    with store.transaction(table) as session:
        existing = session.get(model_for(table), record.id)
        base = existing.updated_at if existing is not None else None
        store.upsert(table, record, force=True, session=session)
        queue.enqueue(
            table,
            op,
            record.id,
            record.to_payload(),
            record.updated_at,
            session,
            base_updated_at=base,
        )


def local_delete(
    store: LocalStore, queue: ChangeQueue, table: str, record_id: str, when: datetime
) -> None:
    """Delete a record locally and queue the delete."""
    with store.transaction(table) as session:
        existing = session.get(model_for(table), record_id)
        base = existing.updated_at if existing is not None else None
        store.delete(table, record_id, session=session)
        queue.enqueue(
            table, ChangeOp.DELETE, record_id, None, when, session, base_updated_at=base
        )


def actions(audit: AuditLogger) -> list[str]:
    """Actions of every journaled audit event, oldest first."""
    return [event.action for event in reversed(audit.recent(500))]


def conflict_events(audit: AuditLogger) -> list[Any]:
    return [e for e in audit.recent(500) if e.action == "sync_conflict"]


@pytest.fixture
def engine_with(
    remote: FakeRemote,
    store: LocalStore,
    audit: AuditLogger,
    queue: ChangeQueue,
    tracker: SyncStateTracker,
    settings: SyncSettings,
) -> Any:
    """Build a synchronizer over the shared fixtures with changed settings."""

    def build(**changes: Any) -> Synchronizer:
        return Synchronizer(
            remote,
            store,
            audit=audit,
            queue=queue,
            tracker=tracker,
            settings=replace(settings, **changes),
            sleep=lambda _: None,
        )

    return build


class TestInitialPull:
    """Tests for pulling a table that was never synced."""

    def test_pulls_every_page(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        tracker: SyncStateTracker,
    ) -> None:
        """Should page through all rows and advance the cursor to the newest."""
        for i in range(5):
            remote.put("books", book_row(f"b{i}", at(i)))

        result = synchronizer.sync_table("books")

        assert result.outcome == TableOutcome.SUCCEEDED
        assert result.pulled == 5
        assert result.applied == 5
        assert store.counts()["books"] == 5
        cursor = tracker.get_cursor("books")
        assert cursor.last_sync == at(4)
        assert cursor.synced_records == 5
        assert remote.calls.count(("fetch_changes", "books")) == 2

    def test_pages_rows_sharing_a_timestamp(
        self, synchronizer: Synchronizer, remote: FakeRemote, store: LocalStore
    ) -> None:
        """Should not lose rows whose updated_at straddles a page boundary."""
        for i in range(4):
            remote.put("books", book_row(f"b{i}", at(1)))

        result = synchronizer.sync_table("books")

        assert result.pulled == 4
        assert store.counts()["books"] == 4

    def test_creates_missing_sync_state(
        self, synchronizer: Synchronizer, remote: FakeRemote, tracker: SyncStateTracker
    ) -> None:
        """Should create the table's cursor on the first cycle."""
        remote.put(
            "fines",
            {
                "id": "f1",
                "student_id": "s1",
                "amount": "2.50",
                "created_at": at(0).isoformat(),
                "updated_at": at(1).isoformat(),
            },
        )
        remote.put(
            "fines",
            {
                "id": "f2",
                "student_id": "s2",
                "amount": "1.00",
                "created_at": at(0).isoformat(),
                "updated_at": at(2).isoformat(),
            },
        )
        assert tracker.list_cursors() == []

        synchronizer.sync_table("fines")

        cursors = tracker.list_cursors()
        assert [c.table for c in cursors] == ["fines"]
        assert cursors[0].last_sync == at(2)
        assert cursors[0].synced_records == 2

    def test_empty_table_creates_cursor_at_epoch(
        self, synchronizer: Synchronizer, tracker: SyncStateTracker
    ) -> None:
        """Should record a completed cycle even when nothing was pulled."""
        result = synchronizer.sync_table("staff")

        cursor = tracker.get_cursor("staff")
        assert result.succeeded
        assert cursor.never_synced
        assert cursor.completed_at is not None


class TestIncrementalPull:
    """Tests for repeated cycles."""

    def test_second_cycle_is_idempotent(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        tracker: SyncStateTracker,
    ) -> None:
        """Should not re-apply or re-count rows replayed at the cursor."""
        for i in range(3):
            remote.put("books", book_row(f"b{i}", at(i)))
        synchronizer.sync_table("books")

        result = synchronizer.sync_table("books")

        assert result.applied == 0
        assert result.conflicts == 0
        cursor = tracker.get_cursor("books")
        assert cursor.last_sync == at(2)
        assert cursor.synced_records == 0

    def test_counts_records_of_last_cycle(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        tracker: SyncStateTracker,
    ) -> None:
        """Should report the rows applied by the latest cycle, not a running total."""
        remote.put("books", book_row("b1", at(1)))
        remote.put("books", book_row("b2", at(2)))
        synchronizer.sync_table("books")
        assert tracker.get_cursor("books").synced_records == 2

        remote.put("books", book_row("b3", at(3)))
        synchronizer.sync_table("books")

        assert tracker.get_cursor("books").synced_records == 1

    def test_applies_only_new_changes(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        tracker: SyncStateTracker,
    ) -> None:
        """Should apply rows changed after the cursor."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")

        remote.put("books", book_row("b1", at(5), available=4))
        remote.put("books", book_row("b2", at(6)))
        result = synchronizer.sync_table("books")

        assert result.applied == 2
        book = store.get("books", "b1")
        assert book is not None
        assert book.available_copies == 4
        assert tracker.get_cursor("books").last_sync == at(6)

    def test_cursor_never_moves_back(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        tracker: SyncStateTracker,
    ) -> None:
        """Should keep the cursor when a cycle pulls nothing newer."""
        remote.put("books", book_row("b1", at(10)))
        synchronizer.sync_table("books")
        before = tracker.get_cursor("books").last_sync

        remote.tables["books"].clear()
        synchronizer.sync_table("books")

        assert tracker.get_cursor("books").last_sync == before

    def test_remote_soft_delete_removes_local_row(
        self, synchronizer: Synchronizer, remote: FakeRemote, store: LocalStore
    ) -> None:
        """Should delete locally a row the remote marked as deleted."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")

        remote.put("books", book_row("b1", at(2), deleted_at=at(2).isoformat()))
        result = synchronizer.sync_table("books")

        assert result.applied == 1
        assert store.get("books", "b1") is None


class TestConflicts:
    """Tests for conflicts between local and remote changes."""

    def test_newer_local_update_wins(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
        audit: AuditLogger,
    ) -> None:
        """Should push a local update that is newer than the remote version."""
        remote.put("books", book_row("book123", at(1), available=5))
        local_edit(store, queue, "books", book_row("book123", at(2), available=2))

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert result.conflicts == 1
        assert result.pushed == 1
        assert remote.get("books", "book123")["available_copies"] == 2
        assert store.get("books", "book123").available_copies == 2
        assert queue.count("books") == 0
        events = conflict_events(audit)
        assert len(events) == 1
        assert events[0].severity == "info"

    def test_newer_remote_update_wins(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
        audit: AuditLogger,
    ) -> None:
        """Should drop a local update older than the remote version."""
        remote.put("books", book_row("book123", at(3), available=4))
        local_edit(store, queue, "books", book_row("book123", at(1), available=3))

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert result.pushed == 0
        assert store.get("books", "book123").available_copies == 4
        assert remote.get("books", "book123")["available_copies"] == 4
        assert queue.count("books") == 0
        assert ("update_record", "books") not in remote.calls
        events = conflict_events(audit)
        assert len(events) == 1
        assert events[0].severity == "warning"

    def test_tie_goes_to_remote(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should keep the remote version when both carry the same timestamp."""
        remote.put("books", book_row("b1", at(2), available=4))
        local_edit(store, queue, "books", book_row("b1", at(2), available=1))

        synchronizer.sync_table("books")

        assert store.get("books", "b1").available_copies == 4
        assert remote.get("books", "b1")["available_copies"] == 4
        assert queue.count("books") == 0

    def test_local_delete_loses_to_newer_remote_update(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should resurrect a record deleted locally but updated later remotely."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        local_delete(store, queue, "books", "b1", at(2))
        remote.put("books", book_row("b1", at(3), available=3))

        synchronizer.sync_table("books")

        book = store.get("books", "b1")
        assert book is not None
        assert book.available_copies == 3
        assert remote.get("books", "b1") is not None
        assert queue.count("books") == 0

    def test_newer_local_delete_wins(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
        audit: AuditLogger,
    ) -> None:
        """Should delete remotely when the local delete is strictly newer."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        remote.put("books", book_row("b1", at(2), available=3))
        local_delete(store, queue, "books", "b1", at(3))

        result = synchronizer.sync_table("books")

        assert result.conflicts == 1
        assert remote.get("books", "b1") is None
        assert store.get("books", "b1") is None
        assert queue.count("books") == 0
        assert conflict_events(audit)[0].severity == "info"

    def test_local_edit_after_sync_is_not_a_conflict(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
        audit: AuditLogger,
    ) -> None:
        """Should push an edit of an unchanged row without resolving anything."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        local_edit(store, queue, "books", book_row("b1", at(2), available=0))

        result = synchronizer.sync_table("books")

        assert result.conflicts == 0
        assert result.pushed == 1
        assert remote.get("books", "b1")["available_copies"] == 0
        assert conflict_events(audit) == []

    def test_local_edit_restores_remote_soft_delete(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should clear a remote soft delete that is older than the local edit."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        remote.put("books", book_row("b1", at(2), deleted_at=at(2).isoformat()))
        local_edit(store, queue, "books", book_row("b1", at(3), available=2))

        synchronizer.sync_table("books")

        row = remote.get("books", "b1")
        assert row["deleted_at"] is None
        assert row["available_copies"] == 2
        assert store.get("books", "b1") is not None

    def test_remote_change_during_cycle_is_not_overwritten(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should resolve again when the remote changes between pull and push."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        local_edit(store, queue, "books", book_row("b1", at(2), available=0))

        def concurrent_edit(table: str, page: list[dict[str, Any]]) -> None:
            remote.on_fetch = None
            remote.put("books", book_row("b1", at(3), available=4))

        remote.on_fetch = concurrent_edit
        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert result.conflicts == 1
        assert remote.get("books", "b1")["available_copies"] == 4
        assert store.get("books", "b1").available_copies == 4
        assert queue.count("books") == 0

    def test_update_recreates_row_deleted_remotely(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should re-insert a locally updated row the remote hard-deleted."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        del remote.tables["books"]["b1"]
        local_edit(store, queue, "books", book_row("b1", at(2), available=3))

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert remote.get("books", "b1")["available_copies"] == 3
        assert queue.count("books") == 0

    def test_edit_during_push_meets_remote_version_it_never_saw(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
        tracker: SyncStateTracker,
        audit: AuditLogger,
    ) -> None:
        """Should resolve an edit made mid-cycle even after the cursor passed the remote version."""
        remote.put("books", book_row("x", at(1)))
        synchronizer.sync_table("books")
        remote.put("books", book_row("x", at(5), title="remote title"))
        remote.put("books", book_row("z", at(7)))
        local_edit(store, queue, "books", book_row("y", at(2)), op=ChangeOp.CREATE)

        def edit_x(method: str, table: str, record_id: str) -> None:
            remote.on_write = None
            local_edit(store, queue, "books", book_row("x", at(6), title="local title"))

        remote.on_write = edit_x
        first = synchronizer.sync_table("books")

        assert first.succeeded
        assert first.conflicts == 0
        assert tracker.get_cursor("books").last_sync == at(7)
        assert store.get("books", "x").title == "local title"
        assert queue.count("books") == 1

        second = synchronizer.sync_table("books")

        assert second.succeeded
        assert second.conflicts == 1
        assert remote.get("books", "x")["title"] == "local title"
        assert queue.count("books") == 0
        events = conflict_events(audit)
        assert len(events) == 1
        metadata = json.loads(events[0].event_metadata)
        assert metadata["winner"] == "local"
        assert metadata["remote"]["title"] == "remote title"

    def test_older_edit_during_push_loses_to_unseen_remote_version(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should keep the remote version when the mid-cycle edit is older."""
        remote.put("books", book_row("x", at(1)))
        synchronizer.sync_table("books")
        remote.put("books", book_row("x", at(5), title="remote title"))
        remote.put("books", book_row("z", at(7)))
        local_edit(store, queue, "books", book_row("y", at(2)), op=ChangeOp.CREATE)

        def edit_x(method: str, table: str, record_id: str) -> None:
            remote.on_write = None
            local_edit(store, queue, "books", book_row("x", at(4), title="local title"))

        remote.on_write = edit_x
        synchronizer.sync_table("books")
        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert result.conflicts == 1
        assert remote.get("books", "x")["title"] == "remote title"
        assert store.get("books", "x").title == "remote title"
        assert queue.count("books") == 0


class TestPush:
    """Tests for pushing local changes."""

    def test_pushes_new_record(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        queue: ChangeQueue,
        repository: Any,
    ) -> None:
        """Should insert a locally created record remotely."""
        record = repository.save("categories", {"name": "Fiction"})

        result = synchronizer.sync_table("categories")

        assert result.pushed == 1
        assert remote.get("categories", record.id)["name"] == "Fiction"
        assert queue.count() == 0

    def test_coalesces_updates_into_one_push(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should push only the latest version of a record edited twice."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        local_edit(store, queue, "books", book_row("b1", at(2), available=3))
        local_edit(store, queue, "books", book_row("b1", at(3), available=2))

        result = synchronizer.sync_table("books")

        assert result.pushed == 1
        assert remote.calls.count(("update_record", "books")) == 1
        assert remote.get("books", "b1")["available_copies"] == 2

    def test_delete_of_row_already_gone(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should acknowledge a delete the remote has already applied."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        del remote.tables["books"]["b1"]
        local_delete(store, queue, "books", "b1", at(2))

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert queue.count("books") == 0


class TestFailures:
    """Tests for retries, failures and isolation between tables."""

    def test_retries_transient_errors(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        audit: AuditLogger,
    ) -> None:
        """Should retry a transient error and complete the cycle."""
        remote.put("books", book_row("b1", at(1)))
        remote.fail("fetch_changes", TransientNetworkError("timeout"), table="books")

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert store.get("books", "b1") is not None
        assert "sync_retry" in actions(audit)

    def test_exhausted_retries_fail_cycle(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        tracker: SyncStateTracker,
        audit: AuditLogger,
    ) -> None:
        """Should fail the cycle and leave the cursor untouched."""
        remote.put("books", book_row("b1", at(1)))
        remote.fail(
            "fetch_changes",
            *(TransientNetworkError("down") for _ in range(3)),
            table="books",
        )

        result = synchronizer.sync_table("books")

        assert result.outcome == TableOutcome.FAILED
        assert synchronizer.phase("books") == CyclePhase.FAILED
        assert tracker.get_cursor("books").never_synced
        assert store.counts()["books"] == 0
        assert synchronizer.status.last_error is not None
        assert "sync_failed" in actions(audit)

    def test_failed_push_keeps_change_queued(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should keep a change queued when its push fails."""
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        local_edit(store, queue, "books", book_row("b1", at(2), available=0))
        remote.fail(
            "update_record",
            *(TransientNetworkError("down") for _ in range(3)),
            table="books",
        )

        result = synchronizer.sync_table("books")

        assert result.outcome == TableOutcome.FAILED
        assert queue.count("books") == 1

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert queue.count("books") == 0
        assert remote.get("books", "b1")["available_copies"] == 0

    def test_tables_are_isolated(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        tracker: SyncStateTracker,
    ) -> None:
        """Should complete one table while another fails."""
        remote.put("books", book_row("b1", at(1)))
        remote.fail(
            "fetch_changes",
            *(TransientNetworkError("down") for _ in range(3)),
            table="borrowings",
        )

        result = synchronizer.sync_all(["books", "borrowings"])

        assert result.succeeded == ["books"]
        assert result.failed == ["borrowings"]
        assert result.has_failures
        assert tracker.get_cursor("books").last_sync == at(1)
        assert tracker.get_cursor("borrowings").never_synced

    def test_rejects_invalid_rows(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        tracker: SyncStateTracker,
        audit: AuditLogger,
    ) -> None:
        """Should skip a book with more available than total copies."""
        remote.put("books", book_row("bad", at(2), available=6, total=5))
        remote.put("books", book_row("good", at(1)))

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert result.rejected == 1
        assert store.get("books", "bad") is None
        assert store.get("books", "good") is not None
        assert tracker.get_cursor("books").last_sync == at(2)
        rejected = [e for e in audit.recent(50) if e.action == "record_rejected"]
        assert len(rejected) == 1
        assert rejected[0].severity == "error"

    def test_unknown_table(self, synchronizer: Synchronizer) -> None:
        """Should refuse to sync a table that is not mirrored."""
        with pytest.raises(ValueError, match="Unknown table"):
            synchronizer.sync_all(["authors"])


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_between_pages(
        self,
        synchronizer: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        tracker: SyncStateTracker,
        audit: AuditLogger,
    ) -> None:
        """Should stop before the next page and leave the cursor untouched."""
        for i in range(5):
            remote.put("books", book_row(f"b{i}", at(i)))
        remote.on_fetch = lambda table, page: synchronizer.cancel("books")

        result = synchronizer.sync_table("books")

        assert result.outcome == TableOutcome.CANCELLED
        assert synchronizer.phase("books") == CyclePhase.IDLE
        assert tracker.get_cursor("books").never_synced
        assert store.counts()["books"] == 0
        assert "sync_cancelled" in actions(audit)

    def test_next_cycle_runs_after_cancel(
        self, synchronizer: Synchronizer, remote: FakeRemote, store: LocalStore
    ) -> None:
        """Should clear a table's cancellation when its next cycle starts."""
        for i in range(5):
            remote.put("books", book_row(f"b{i}", at(i)))
        remote.on_fetch = lambda table, page: synchronizer.cancel("books")
        synchronizer.sync_table("books")
        remote.on_fetch = None

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert store.counts()["books"] == 5


class TestStatus:
    """Tests for the observable engine status."""

    def test_status_after_successful_run(
        self, synchronizer: Synchronizer, remote: FakeRemote
    ) -> None:
        """Should record the completed run."""
        remote.put("books", book_row("b1", at(1)))

        synchronizer.sync_all(["books", "categories"])

        status = synchronizer.status
        assert status.last_sync is not None
        assert status.initial_sync_completed
        assert status.last_error is None
        assert not status.is_syncing
        assert synchronizer.phase("books") == CyclePhase.IDLE

    def test_check_connectivity(
        self, synchronizer: Synchronizer, remote: FakeRemote
    ) -> None:
        """Should reflect the remote health check."""
        assert synchronizer.check_connectivity() is True
        assert synchronizer.status.is_online

        remote.online = False

        assert synchronizer.check_connectivity() is False
        assert not synchronizer.status.is_online

    def test_summary_state(
        self, synchronizer: Synchronizer, remote: FakeRemote
    ) -> None:
        """Should summarize the status as offline, idle or error."""
        assert synchronizer.status.state == SyncState.OFFLINE

        synchronizer.sync_all(["books"])
        assert synchronizer.status.state == SyncState.IDLE

        remote.fail(
            "fetch_changes",
            *(TransientNetworkError("down") for _ in range(3)),
            table="books",
        )
        synchronizer.sync_all(["books"])
        assert synchronizer.status.state == SyncState.ERROR

    def test_success_is_audited(
        self, synchronizer: Synchronizer, remote: FakeRemote, audit: AuditLogger
    ) -> None:
        """Should log a success event for a table that changed."""
        remote.put("books", book_row("b1", at(1)))

        synchronizer.sync_table("books")

        synced = [e for e in audit.recent(10) if e.action == "table_synced"]
        assert len(synced) == 1
        assert synced[0].severity == "success"


class TestDirections:
    """Tests for tables that sync one way only."""

    def test_pull_only_keeps_local_changes_queued(
        self,
        engine_with: Any,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should pull remote rows without pushing anything."""
        remote.put(
            "categories",
            {"id": "c1", "name": "Fiction",
             "created_at": at(0).isoformat(), "updated_at": at(1).isoformat()},
        )
        local_edit(
            store,
            queue,
            "categories",
            {"id": "c2", "name": "Poetry",
             "created_at": at(2).isoformat(), "updated_at": at(2).isoformat()},
            op=ChangeOp.CREATE,
        )
        synchronizer = engine_with(directions={"categories": SyncDirection.PULL_ONLY})

        result = synchronizer.sync_table("categories")

        assert result.succeeded
        assert result.pushed == 0
        assert store.get("categories", "c1") is not None
        assert remote.get("categories", "c2") is None
        assert ("insert_record", "categories") not in remote.calls
        assert queue.count("categories") == 1

    def test_push_only_never_pulls(
        self,
        engine_with: Any,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
        tracker: SyncStateTracker,
    ) -> None:
        """Should push local changes and leave the cursor where it was."""
        remote.put("books", book_row("b1", at(1)))
        local_edit(store, queue, "books", book_row("b2", at(2)), op=ChangeOp.CREATE)
        synchronizer = engine_with(directions={"books": "push_only"})

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert result.pushed == 1
        assert ("fetch_changes", "books") not in remote.calls
        assert remote.get("books", "b2") is not None
        assert store.get("books", "b1") is None
        assert tracker.get_cursor("books").never_synced
        assert queue.count("books") == 0


class TestConflictStrategies:
    """Tests for the configurable conflict strategies."""

    def test_local_wins_over_newer_remote(
        self,
        engine_with: Any,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should push the local version past a newer remote one."""
        synchronizer = engine_with(conflict_strategy=ConflictStrategy.LOCAL_WINS)
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        remote.put("books", book_row("b1", at(5), available=4))
        local_edit(store, queue, "books", book_row("b1", at(2), available=0))

        result = synchronizer.sync_table("books")

        assert result.succeeded
        assert result.pushed == 1
        row = remote.get("books", "b1")
        assert row["available_copies"] == 0
        assert datetime.fromisoformat(row["updated_at"]) > at(5)
        assert store.get("books", "b1").available_copies == 0
        logged = synchronizer.conflicts.list_conflicts(include_resolved=True)
        assert [(c.strategy, c.winner, c.resolved) for c in logged] == [
            ("local_wins", "local", True)
        ]

    def test_remote_wins_for_one_table(
        self,
        engine_with: Any,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should drop a newer local edit on a table set to remote wins."""
        synchronizer = engine_with(
            conflict_strategies={"books": ConflictStrategy.REMOTE_WINS}
        )
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        remote.put("books", book_row("b1", at(2), available=4))
        local_edit(store, queue, "books", book_row("b1", at(3), available=0))

        synchronizer.sync_table("books")

        assert remote.get("books", "b1")["available_copies"] == 4
        assert store.get("books", "b1").available_copies == 4
        assert queue.count("books") == 0


class TestManualSettlement:
    """Tests for conflicts held until settled by hand."""

    @pytest.fixture
    def held(
        self,
        engine_with: Any,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> Synchronizer:
        """A synchronizer holding one conflict on book b1."""
        synchronizer = engine_with(conflict_strategy=ConflictStrategy.MANUAL)
        remote.put("books", book_row("b1", at(1)))
        synchronizer.sync_table("books")
        remote.put("books", book_row("b1", at(5), available=4))
        local_edit(store, queue, "books", book_row("b1", at(6), available=0))
        synchronizer.sync_table("books")
        return synchronizer

    def test_holds_conflicting_change(
        self,
        held: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
        audit: AuditLogger,
    ) -> None:
        """Should neither push the local change nor apply the remote one."""
        assert remote.get("books", "b1")["available_copies"] == 4
        assert store.get("books", "b1").available_copies == 0
        assert queue.count("books") == 1
        open_conflicts = held.conflicts.list_conflicts()
        assert len(open_conflicts) == 1
        assert open_conflicts[0].conflict_type == "update_conflict"
        events = conflict_events(audit)
        assert len(events) == 1
        assert json.loads(events[0].event_metadata)["winner"] == "pending"

    def test_held_conflict_is_not_reported_twice(
        self, held: Synchronizer, remote: FakeRemote, audit: AuditLogger
    ) -> None:
        """Should keep one open conflict and one audit event across cycles."""
        result = held.sync_table("books")

        assert result.succeeded
        assert result.pushed == 0
        assert len(held.conflicts.list_conflicts()) == 1
        assert len(conflict_events(audit)) == 1
        assert remote.get("books", "b1")["available_copies"] == 4

    def test_settle_keeping_remote(
        self,
        held: Synchronizer,
        store: LocalStore,
        queue: ChangeQueue,
        audit: AuditLogger,
    ) -> None:
        """Should discard the local change and apply the remote version."""
        conflict_id = held.conflicts.list_conflicts()[0].id

        held.settle_conflict(conflict_id, Winner.REMOTE)

        assert queue.count("books") == 0
        assert store.get("books", "b1").available_copies == 4
        assert held.conflicts.list_conflicts() == []
        settled = held.conflicts.get(conflict_id)
        assert settled.resolved
        assert settled.winner == "remote"
        assert "conflict_settled" in actions(audit)

    def test_settle_keeping_local_pushes_next_cycle(
        self,
        held: Synchronizer,
        remote: FakeRemote,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        """Should requeue the local change on top of the remote version."""
        conflict_id = held.conflicts.list_conflicts()[0].id

        held.settle_conflict(conflict_id, Winner.LOCAL)
        assert queue.count("books") == 1

        result = held.sync_table("books")

        assert result.succeeded
        assert result.conflicts == 0
        assert result.pushed == 1
        assert remote.get("books", "b1")["available_copies"] == 0
        assert queue.count("books") == 0

    def test_settle_twice(self, held: Synchronizer) -> None:
        """Should refuse to settle a conflict that is already settled."""
        conflict_id = held.conflicts.list_conflicts()[0].id
        held.settle_conflict(conflict_id, Winner.REMOTE)

        with pytest.raises(ValueError, match="No open conflict"):
            held.settle_conflict(conflict_id, Winner.LOCAL)

    def test_settle_unknown(self, held: Synchronizer) -> None:
        """Should refuse an unknown conflict id."""
        with pytest.raises(ValueError, match="No open conflict"):
            held.settle_conflict(999, Winner.LOCAL)
