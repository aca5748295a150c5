"""Sync engine reconciling the local mirror with the remote backend.

This module provides:
- Synchronizer: Runs sync cycles per table and fans them out over a bounded
  thread pool

Cycle of one table:
    IDLE -> PULLING -> RESOLVING -> PUSHING -> ADVANCING -> IDLE
    Any phase may end in FAILED; the table's cursor is then left untouched
    and the next cycle starts over from it.

1. PULLING: fetch remote rows changed since the cursor, page by page
2. RESOLVING: validate rows and resolve them against pending local changes
3. PUSHING: send the remaining local changes, acknowledging each success
4. ADVANCING: apply remote winners and move the cursor in one transaction

A pull-only table skips PUSHING and keeps its local changes queued; a
push-only table skips PULLING and never moves its cursor.

Tables never share a transaction, so one table failing does not affect
another. Network calls are retried with capped exponential backoff and are
never made while a table's write lock is held.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from shelfsync.client.schemas import RecordBase, parse_record
from shelfsync.client.state import SyncStateTracker
from shelfsync.client.store import model_for
from shelfsync.client.sync.conflict import (
    ConflictLog,
    ConflictResolver,
    parse_timestamp,
    remote_version_time,
)
from shelfsync.client.sync.queue import ChangeQueue
from shelfsync.client.sync.retry import retry_with_backoff
from shelfsync.client.sync.types import (
    TICK,
    ChangeEntry,
    ChangeOp,
    ConflictError,
    CyclePhase,
    RecordValidationError,
    RemoteRejectionError,
    StorageError,
    SyncCancelledError,
    SyncError,
    SyncResult,
    SyncStatus,
    TableOutcome,
    TableSyncResult,
    Winner,
)
from shelfsync.core.config import SyncSettings
from shelfsync.core.types import Severity

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from sqlalchemy.orm import Session

    from shelfsync.client.audit import AuditLogger
    from shelfsync.client.store import LocalStore
    from shelfsync.client.sync.types import RemoteSource

logger = logging.getLogger(__name__)

COMPONENT = "synchronizer"

# Delay before retrying a local batch that raised StorageError.
STORAGE_BACKOFF = 0.1  # seconds


@dataclass
class _CyclePlan:
    """Work decided during RESOLVING and PUSHING, applied during ADVANCING.

    Attributes:
        table: Table of the cycle.
        high_water: Highest queue seq covered by this cycle.
        upserts: Records to write locally, with their force flag.
        deletes: Record ids to delete locally.
        dropped: Local changes that lost a conflict.
        on_remote: Record ids known to exist remotely, pushed as updates.
        revive: Record ids soft-deleted remotely that the push must restore.
        rebased: Local winners restamped past the remote version.
        held: Record ids whose local change awaits manual settlement.
        max_seen: Highest remote ``updated_at`` pulled.
    """

    table: str
    high_water: int
    upserts: dict[str, tuple[RecordBase, bool]] = field(default_factory=dict)
    deletes: set[str] = field(default_factory=set)
    dropped: list[ChangeEntry] = field(default_factory=list)
    on_remote: set[str] = field(default_factory=set)
    revive: set[str] = field(default_factory=set)
    rebased: dict[str, ChangeEntry] = field(default_factory=dict)
    held: set[str] = field(default_factory=set)
    max_seen: datetime | None = None

    def see(self, timestamp: datetime | None) -> None:
        if timestamp is not None and (self.max_seen is None or timestamp > self.max_seen):
            self.max_seen = timestamp

    def apply_remote(self, record: RecordBase, force: bool) -> None:
        if record.is_deleted:
            self.upserts.pop(record.id, None)
            self.deletes.add(record.id)
        else:
            self.deletes.discard(record.id)
            self.upserts[record.id] = (record, force)

    def drop(self, entry: ChangeEntry) -> None:
        self.dropped.append(entry)

    @property
    def dropped_ids(self) -> set[str]:
        return {entry.record_id for entry in self.dropped}


def _row_time(row: dict[str, Any]) -> datetime | None:
    try:
        return parse_timestamp(row["updated_at"])
    except (KeyError, TypeError, ValueError):
        return None


class Synchronizer:
    """Synchronizes mirrored tables with the remote backend.

    Usage:
        store = LocalStore(db_path)
        audit = AuditLogger(store, sink=remote)
        synchronizer = Synchronizer(remote, store, audit=audit)

        result = synchronizer.sync_all()
        for table, outcome in result.tables.items():
            print(table, outcome.outcome.name)
    """

    def __init__(
        self,
        remote: RemoteSource,
        store: LocalStore,
        *,
        audit: AuditLogger,
        queue: ChangeQueue | None = None,
        tracker: SyncStateTracker | None = None,
        resolver: ConflictResolver | None = None,
        conflicts: ConflictLog | None = None,
        settings: SyncSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the synchronizer.

        Args:
            remote: Remote backend to sync with.
            store: Local mirror.
            audit: Audit logger receiving cycle events.
            queue: Change queue (defaults to one over ``store``).
            tracker: Cursor tracker (defaults to one over ``store``).
            resolver: Conflict resolver (defaults to the strategies of
                ``settings``).
            conflicts: Conflict log (defaults to one over ``store``).
            settings: Engine settings.
            sleep: Sleep function used between retries (replaced in tests).
        """
        self._remote = remote
        self._store = store
        self._audit = audit
        self._queue = queue or ChangeQueue(store)
        self._tracker = tracker or SyncStateTracker(store)
        self._settings = settings or SyncSettings()
        self._conflicts = conflicts or ConflictLog(store)
        self._resolver = resolver or ConflictResolver(
            audit,
            self._conflicts,
            strategy=self._settings.conflict_strategy,
            table_strategies=self._settings.conflict_strategies,
        )
        self._sleep = sleep

        self._lock = threading.RLock()
        self._cycle_locks: dict[str, threading.Lock] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_all = threading.Event()
        self._phases: dict[str, CyclePhase] = {}
        self._active = 0
        self._status = SyncStatus()

    # === Observation ===

    @property
    def settings(self) -> SyncSettings:
        """Engine settings."""
        return self._settings

    @property
    def conflicts(self) -> ConflictLog:
        """Log of conflicts, including those awaiting manual settlement."""
        return self._conflicts

    @property
    def status(self) -> SyncStatus:
        """Get a snapshot of the engine status."""
        with self._lock:
            return replace(self._status, is_syncing=self._active > 0)

    def phase(self, table: str) -> CyclePhase:
        """Get the current cycle phase of a table."""
        with self._lock:
            return self._phases.get(table, CyclePhase.IDLE)

    def check_connectivity(self) -> bool:
        """Check the remote and record whether it is reachable."""
        online = self._remote.health_check()
        with self._lock:
            self._status.is_online = online
        if not online:
            logger.info("Remote is unreachable")
        return online

    # === Control ===

    def cancel(self, table: str | None = None) -> None:
        """Request cancellation of running cycles.

        Cancellation is cooperative: a cycle stops at its next check (between
        pages, retries or pushed entries), never inside a transaction.

        Args:
            table: Table to cancel, or None for every running cycle.
        """
        with self._lock:
            if table is None:
                self._cancel_all.set()
                for event in self._cancel_events.values():
                    event.set()
            else:
                self._event_for(table).set()
        logger.info("Cancellation requested for %s", table or "all tables")

    def sync_all(self, tables: Iterable[str] | None = None) -> SyncResult:
        """Run one cycle for each table, a bounded number at a time.

        A failing table never prevents the others from completing.

        Args:
            tables: Tables to sync (defaults to the configured tables).

        Returns:
            Per-table outcomes, in the order the tables were given.
        """
        names = list(tables) if tables is not None else list(self._settings.tables)
        for name in names:
            model_for(name)
        if not names:
            return SyncResult()

        self._cancel_all.clear()
        outcomes: dict[str, TableSyncResult] = {}
        workers = min(self._settings.max_workers, len(names))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="shelfsync-sync") as pool:
            futures = {pool.submit(self._run_cycle, name): name for name in names}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    outcomes[name] = future.result()
                except Exception as e:
                    logger.exception("Unexpected error while syncing %s", name)
                    outcomes[name] = TableSyncResult(
                        name, outcome=TableOutcome.FAILED, error=str(e)
                    )

        result = SyncResult(tables={name: outcomes[name] for name in names})
        self._finish_run(result)
        return result

    def sync_table(self, table: str) -> TableSyncResult:
        """Run one sync cycle for a single table."""
        model_for(table)
        with self._lock:
            if self._active == 0:
                self._cancel_all.clear()
        return self._run_cycle(table)

    def settle_conflict(self, conflict_id: int, keep: Winner) -> None:
        """Settle a conflict held for manual resolution.

        Keeping the remote version discards the queued local change and
        applies the remote version locally. Keeping the local version
        requeues the change on top of the remote version, so the next cycle
        pushes it. Nothing is sent to the remote here.

        Args:
            conflict_id: Open conflict from the conflict log.
            keep: Side whose version survives.

        Raises:
            ValueError: If the conflict does not exist or is already settled.
            RecordValidationError: If the stored remote version is invalid.
        """
        conflict = self._conflicts.get(conflict_id)
        if conflict is None or conflict.resolved:
            raise ValueError(f"No open conflict with id {conflict_id}")
        table, record_id = conflict.table_name, conflict.record_id
        remote = json.loads(conflict.remote_data) if conflict.remote_data else None

        with self._lock:
            cycle_lock = self._cycle_locks.setdefault(table, threading.Lock())
        with cycle_lock:
            entry = self._queue.pending_for(table, record_id)
            with self._store.transaction(table) as session:
                if entry is not None:
                    self._queue.acknowledge([entry], session)
                if keep == Winner.REMOTE:
                    if remote is None or remote.get("deleted_at"):
                        self._store.delete(table, record_id, session=session)
                    else:
                        self._store.upsert(
                            table, parse_record(table, remote), force=True, session=session
                        )
                elif entry is not None:
                    self._requeue(entry, remote, session)
                self._conflicts.mark_resolved(conflict_id, keep, session)

        self._audit.log_event(
            "conflict_settled",
            f"Conflict on {table}/{record_id} settled by hand: "
            f"{'local' if keep == Winner.LOCAL else 'remote'} version kept",
            Severity.INFO,
            COMPONENT,
            {"table": table, "record_id": record_id, "conflict_id": conflict_id},
        )

    # === Cycle ===

    def _run_cycle(self, table: str) -> TableSyncResult:
        with self._lock:
            cycle_lock = self._cycle_locks.setdefault(table, threading.Lock())
        if not cycle_lock.acquire(blocking=False):
            logger.info("Skipping %s: a cycle is already running", table)
            return TableSyncResult(
                table, outcome=TableOutcome.SKIPPED, error="cycle already running"
            )

        started = time.monotonic()
        result = TableSyncResult(table)
        with self._lock:
            self._active += 1
            self._event_for(table).clear()
        try:
            direction = self._settings.direction_for(table)
            self._set_phase(table, CyclePhase.PULLING)
            rows = self._pull(table, result) if direction.pulls else []

            self._set_phase(table, CyclePhase.RESOLVING)
            plan = self._resolve(table, rows, result)

            self._set_phase(table, CyclePhase.PUSHING)
            if direction.pushes:
                self._push(plan, result)
            else:
                logger.debug("%s is pull-only, local changes stay queued", table)

            self._check_cancelled(table)
            self._set_phase(table, CyclePhase.ADVANCING)
            self._advance(plan, result)

            self._set_phase(table, CyclePhase.IDLE)
            self._audit_success(result)
        except SyncCancelledError as e:
            result.outcome = TableOutcome.CANCELLED
            result.error = str(e)
            self._set_phase(table, CyclePhase.IDLE)
            self._audit.log_event(
                "sync_cancelled",
                f"Sync of {table} cancelled; cursor left unchanged",
                Severity.WARNING,
                COMPONENT,
                {"table": table},
            )
        except Exception as e:
            result.outcome = TableOutcome.FAILED
            result.error = str(e)
            self._set_phase(table, CyclePhase.FAILED)
            logger.exception("Sync of %s failed", table)
            with self._lock:
                self._status.last_error = f"{table}: {e}"
            self._audit.log_event(
                "sync_failed",
                f"Sync of {table} failed: {e}",
                Severity.ERROR,
                COMPONENT,
                {"table": table, "error": type(e).__name__},
            )
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)
            with self._lock:
                self._active -= 1
            cycle_lock.release()
        return result

    def _pull(self, table: str, result: TableSyncResult) -> list[dict[str, Any]]:
        """Fetch every remote row changed since the table's cursor.

        The first page includes rows stamped exactly at the cursor, so rows
        applied by the previous cycle may come back; applying them again is
        a no-op.
        """
        cursor = self._tracker.get_cursor(table)
        page_size = self._settings.page_size
        since, after_id = cursor.last_sync, None
        rows: list[dict[str, Any]] = []

        while True:
            self._check_cancelled(table)
            page: list[dict[str, Any]] = self._with_retry(
                table,
                lambda: self._remote.fetch_changes(table, since, page_size, after_id),
            )
            rows.extend(page)
            if len(page) < page_size:
                break
            last = page[-1]
            last_time = _row_time(last)
            if last_time is None or "id" not in last:
                raise RecordValidationError(
                    table, last.get("id"), "page key (id, updated_at) missing"
                )
            since, after_id = last_time, str(last["id"])

        result.pulled = len(rows)
        logger.debug("Pulled %d %s rows since %s", len(rows), table, cursor.last_sync)
        return rows

    def _resolve(
        self, table: str, rows: list[dict[str, Any]], result: TableSyncResult
    ) -> _CyclePlan:
        """Validate pulled rows and resolve them against pending local changes."""
        high_water = self._queue.high_water_mark(table)
        plan = _CyclePlan(table=table, high_water=high_water)
        pending = {
            entry.record_id: entry
            for entry in self._queue.drain(table, up_to_seq=high_water)
        }

        # The same row may appear twice if it changed between pages; keep
        # the latest version.
        latest: dict[str, tuple[RecordBase, dict[str, Any]]] = {}
        for row in rows:
            plan.see(_row_time(row))
            try:
                record = parse_record(table, row)
            except RecordValidationError as e:
                result.rejected += 1
                self._audit.log_event(
                    "record_rejected",
                    str(e),
                    Severity.ERROR,
                    COMPONENT,
                    {"table": table, "record_id": e.record_id, "detail": e.detail},
                )
                continue
            latest[record.id] = (record, row)

        for record_id, (record, row) in latest.items():
            entry = pending.get(record_id)
            if entry is None:
                plan.apply_remote(record, force=False)
                continue

            if entry.op == ChangeOp.DELETE and record.is_deleted:
                plan.drop(entry)
                plan.apply_remote(record, force=False)
                continue

            if (
                entry.base_updated_at is not None
                and record.updated_at <= entry.base_updated_at
            ):
                # The local edit was made on this version or a newer one. A
                # remote version the local row never saw always goes to the
                # resolver, even when the cursor has already passed it.
                if not record.is_deleted:
                    plan.on_remote.add(record_id)
                continue

            result.conflicts += 1
            resolution = self._resolver.resolve(entry, row)
            if resolution.deferred:
                plan.held.add(record_id)
            elif resolution.local_wins:
                plan.on_remote.add(record_id)
                if record.is_deleted:
                    plan.revive.add(record_id)
                if resolution.entry is not entry:
                    plan.rebased[record_id] = resolution.entry
            else:
                plan.drop(entry)
                plan.apply_remote(record, force=True)

        return plan

    def _push(self, plan: _CyclePlan, result: TableSyncResult) -> None:
        """Push queued local changes that survived resolution."""
        table = plan.table
        skipped = plan.dropped_ids | plan.held | self._conflicts.open_record_ids(table)
        entries = [
            plan.rebased.get(entry.record_id, entry)
            for entry in self._queue.drain(table, up_to_seq=plan.high_water)
            if entry.record_id not in skipped
        ]

        for entry in entries:
            self._check_cancelled(table)
            exists = True if entry.record_id in plan.on_remote else None
            revive = entry.record_id in plan.revive
            try:
                stored = self._push_entry(entry, exists=exists, revive=revive)
            except ConflictError as conflict:
                result.conflicts += 1
                resolution = self._resolver.resolve(entry, conflict.remote)
                if resolution.deferred:
                    continue
                if not resolution.local_wins:
                    plan.drop(entry)
                    if conflict.remote is not None:
                        self._plan_remote(plan, conflict.remote, result, force=True)
                    else:
                        plan.upserts.pop(entry.record_id, None)
                        plan.deletes.add(entry.record_id)
                    continue
                entry = resolution.entry
                revive = bool(conflict.remote and conflict.remote.get("deleted_at"))
                stored = self._push_entry(
                    entry, exists=conflict.remote is not None, revive=revive
                )

            self._queue.acknowledge([entry])
            result.pushed += 1
            if stored is not None:
                self._plan_remote(plan, stored, result, force=False)

    def _push_entry(
        self, entry: ChangeEntry, *, exists: bool | None, revive: bool
    ) -> dict[str, Any] | None:
        """Send one change to the remote.

        Every write is conditional on the remote version (see
        ``ChangeEntry.write_guard``), so a remote version the local change
        was not made on is never overwritten.

        Args:
            entry: Coalesced change to send.
            exists: Whether the row exists remotely; None to decide from
                the change operation.
            revive: Clear a remote soft delete while updating.

        Returns:
            The row as stored by the remote, or None for deletes.

        Raises:
            ConflictError: If the remote holds a version that is not older.
        """
        table, record_id = entry.table, entry.record_id
        try:
            if entry.op == ChangeOp.DELETE:
                self._with_retry(
                    table,
                    lambda: self._remote.delete_record(
                        table, record_id, entry.write_guard
                    ),
                )
                return None

            payload = dict(entry.payload or {})
            if revive:
                payload["deleted_at"] = None
            if exists is None:
                exists = entry.op != ChangeOp.CREATE
            if not exists:
                return self._with_retry(
                    table, lambda: self._remote.insert_record(table, payload)
                )
            return self._with_retry(
                table,
                lambda: self._remote.update_record(
                    table, record_id, payload, entry.write_guard
                ),
            )
        except RemoteRejectionError:
            remote = self._with_retry(
                table, lambda: self._remote.fetch_record(table, record_id)
            )

        if remote is None:
            if entry.op == ChangeOp.DELETE:
                logger.debug("%s/%s already gone remotely", table, record_id)
                return None
            raise ConflictError(table, record_id, None)

        remote_time = _row_time(remote)
        if entry.op == ChangeOp.CREATE and remote_time == entry.updated_at:
            # An earlier push of this create landed but was never acknowledged.
            return remote
        raise ConflictError(table, record_id, remote)

    def _plan_remote(
        self,
        plan: _CyclePlan,
        row: dict[str, Any],
        result: TableSyncResult,
        *,
        force: bool,
    ) -> None:
        try:
            record = parse_record(plan.table, row)
        except RecordValidationError as e:
            result.rejected += 1
            self._audit.log_event(
                "record_rejected",
                str(e),
                Severity.ERROR,
                COMPONENT,
                {"table": plan.table, "record_id": e.record_id, "detail": e.detail},
            )
            return
        plan.apply_remote(record, force=force)

    def _advance(self, plan: _CyclePlan, result: TableSyncResult) -> None:
        """Apply the plan and move the cursor in a single transaction."""
        table = plan.table

        def apply() -> int:
            applied = 0
            with self._store.transaction(table) as session:
                self._queue.acknowledge(plan.dropped, session)
                for record_id, (record, force) in plan.upserts.items():
                    if self._queue.has_pending(session, table, record_id):
                        continue
                    if self._store.upsert(table, record, force=force, session=session):
                        applied += 1
                for record_id in plan.deletes:
                    if self._queue.has_pending(session, table, record_id):
                        continue
                    if self._store.delete(table, record_id, session=session):
                        applied += 1
                self._tracker.advance_cursor(table, plan.max_seen, applied, session)
            return applied

        result.applied = retry_with_backoff(
            apply,
            max_retries=self._settings.storage_retries,
            initial_backoff=STORAGE_BACKOFF,
            max_backoff=STORAGE_BACKOFF * 10,
            retryable_exceptions=(StorageError,),
            sleep=self._sleep,
        )

    def _requeue(
        self, entry: ChangeEntry, remote: dict[str, Any] | None, session: Session
    ) -> None:
        """Queue a kept local change again, based on the remote version."""
        table, record_id = entry.table, entry.record_id
        if remote is None:
            if entry.op == ChangeOp.DELETE:
                return
            op, base, stamp = ChangeOp.CREATE, None, entry.updated_at
        else:
            op = ChangeOp.DELETE if entry.op == ChangeOp.DELETE else ChangeOp.UPDATE
            base = parse_timestamp(remote["updated_at"])
            stamp = max(entry.updated_at, remote_version_time(remote) + TICK)

        kept = entry.restamped(stamp)
        if op != ChangeOp.DELETE and kept.payload is not None:
            self._store.upsert(
                table, parse_record(table, kept.payload), force=True, session=session
            )
        self._queue.enqueue(
            table, op, record_id, kept.payload, stamp, session, base_updated_at=base
        )

    # === Helpers ===

    def _with_retry(self, table: str, func: Callable[[], Any]) -> Any:
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            self._audit.log_event(
                "sync_retry",
                f"Retrying {table} after transient error (attempt {attempt}): {error}",
                Severity.WARNING,
                COMPONENT,
                {"table": table, "attempt": attempt, "delay": delay},
            )

        return retry_with_backoff(
            func,
            max_retries=self._settings.max_retries,
            initial_backoff=self._settings.initial_backoff,
            max_backoff=self._settings.max_backoff,
            backoff_multiplier=self._settings.backoff_multiplier,
            should_cancel=lambda: self._is_cancelled(table),
            on_retry=on_retry,
            sleep=self._sleep,
        )

    def _event_for(self, table: str) -> threading.Event:
        with self._lock:
            return self._cancel_events.setdefault(table, threading.Event())

    def _is_cancelled(self, table: str) -> bool:
        return self._cancel_all.is_set() or self._event_for(table).is_set()

    def _check_cancelled(self, table: str) -> None:
        if self._is_cancelled(table):
            raise SyncCancelledError(f"Sync of {table} cancelled")

    def _set_phase(self, table: str, phase: CyclePhase) -> None:
        with self._lock:
            self._phases[table] = phase
        logger.debug("%s -> %s", table, phase.name)

    def _audit_success(self, result: TableSyncResult) -> None:
        if not (result.applied or result.pushed or result.conflicts or result.rejected):
            logger.debug("%s is up to date", result.table)
            return
        self._audit.log_event(
            "table_synced",
            (
                f"Synced {result.table}: {result.pulled} pulled, {result.applied} "
                f"applied, {result.pushed} pushed, {result.conflicts} conflicts"
            ),
            Severity.SUCCESS,
            COMPONENT,
            {
                "table": result.table,
                "pulled": result.pulled,
                "applied": result.applied,
                "pushed": result.pushed,
                "conflicts": result.conflicts,
                "rejected": result.rejected,
            },
        )

    def _finish_run(self, result: SyncResult) -> None:
        with self._lock:
            if result.succeeded:
                self._status.is_online = True
                self._status.last_sync = datetime.now(UTC)
            if not result.has_failures:
                self._status.last_error = None
                self._status.initial_sync_completed = True

        logger.info(
            "Sync run finished: %d succeeded, %d failed",
            len(result.succeeded),
            len(result.failed),
        )
        if result.succeeded:
            try:
                self._audit.flush()
            except SyncError as e:
                logger.warning("Could not flush audit events: %s", e)
