"""Conflict resolution between pending local changes and remote versions.

This module provides:
- ConflictResolver: Strategy-driven resolution with an audit trail
- ConflictLog: Local record of every conflict in ``sync_conflicts``

Strategies:
    NEWEST_WINS (default): the version with the strictly greater
    ``updated_at`` wins; ties go to the remote, which is authoritative. A
    local delete only beats a remote update that is strictly older;
    otherwise the record is resurrected from the remote and the delete is
    dropped.
    LOCAL_WINS / REMOTE_WINS: one side always wins. A local winner that is
    not newer than the remote is restamped just past the remote version so
    the conditional push is accepted.
    MANUAL: the local change stays queued and unpushed until the conflict is
    settled by hand.

Every new conflict emits exactly one audit event carrying both versions,
before the winner is applied.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from shelfsync.client.models import SyncConflictRow
from shelfsync.client.sync.types import TICK, ChangeEntry, ChangeOp, Resolution, Winner
from shelfsync.core.types import ConflictStrategy, Severity

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.orm import Session

    from shelfsync.client.audit import AuditLogger
    from shelfsync.client.store import LocalStore

logger = logging.getLogger(__name__)

COMPONENT = "conflict_resolver"


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse a remote timestamp into an aware UTC datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def remote_version_time(remote: dict[str, Any]) -> datetime:
    """Get the time of the remote version, counting a soft delete as a write."""
    updated = parse_timestamp(remote["updated_at"])
    if remote.get("deleted_at"):
        return max(updated, parse_timestamp(remote["deleted_at"]))
    return updated


def _winner_name(winner: Winner | None) -> str:
    if winner is None:
        return "pending"
    return "local" if winner == Winner.LOCAL else "remote"


class ConflictLog:
    """Conflicts kept in the local ``sync_conflicts`` table.

    Automatically resolved conflicts are stored already resolved. A conflict
    held for manual settlement stays open, and detecting it again updates
    the open row instead of adding one.
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def record(
        self, resolution: Resolution, strategy: ConflictStrategy
    ) -> tuple[int, bool]:
        """Store a conflict.

        Returns:
            The conflict id, and whether a new row was created.
        """
        entry = resolution.entry
        remote = resolution.remote
        local_data = json.dumps(entry.payload, sort_keys=True) if entry.payload else None
        remote_data = json.dumps(remote, sort_keys=True, default=str) if remote else None

        with self._store.transaction(entry.table) as session:
            if resolution.deferred:
                row = self._open_row(session, entry.table, entry.record_id)
                if row is not None:
                    row.local_op = entry.op.value
                    row.local_updated_at = entry.updated_at
                    row.local_data = local_data
                    row.remote_data = remote_data
                    return row.id, False

            deleted = entry.op == ChangeOp.DELETE or not remote or remote.get("deleted_at")
            row = SyncConflictRow(
                table_name=entry.table,
                record_id=entry.record_id,
                conflict_type="delete_conflict" if deleted else "update_conflict",
                local_op=entry.op.value,
                local_updated_at=entry.updated_at,
                local_data=local_data,
                remote_data=remote_data,
                strategy=strategy.value,
                resolved=not resolution.deferred,
                winner=None if resolution.deferred else _winner_name(resolution.winner),
                resolved_at=None if resolution.deferred else datetime.now(UTC),
            )
            session.add(row)
            session.flush()
            return row.id, True

    def get(self, conflict_id: int) -> SyncConflictRow | None:
        """Get a conflict by id."""
        with self._store.read() as session:
            return session.get(SyncConflictRow, conflict_id)

    def list_conflicts(
        self, table: str | None = None, *, include_resolved: bool = False
    ) -> list[SyncConflictRow]:
        """List conflicts, oldest first.

        Args:
            table: Only conflicts of this table.
            include_resolved: Also list conflicts that were settled.
        """
        stmt = select(SyncConflictRow).order_by(SyncConflictRow.id)
        if table is not None:
            stmt = stmt.where(SyncConflictRow.table_name == table)
        if not include_resolved:
            stmt = stmt.where(SyncConflictRow.resolved.is_(False))
        with self._store.read() as session:
            return list(session.scalars(stmt).all())

    def open_record_ids(self, table: str) -> set[str]:
        """Get the records of a table held by an open conflict."""
        with self._store.read() as session:
            return set(
                session.scalars(
                    select(SyncConflictRow.record_id).where(
                        SyncConflictRow.table_name == table,
                        SyncConflictRow.resolved.is_(False),
                    )
                ).all()
            )

    def count_open(self) -> int:
        """Count conflicts awaiting settlement."""
        with self._store.read() as session:
            count = session.scalar(
                select(func.count())
                .select_from(SyncConflictRow)
                .where(SyncConflictRow.resolved.is_(False))
            )
        return count or 0

    def mark_resolved(self, conflict_id: int, winner: Winner, session: Session) -> None:
        """Close a conflict inside the transaction that applied the winner."""
        row = session.get(SyncConflictRow, conflict_id)
        if row is None:
            raise ValueError(f"Unknown conflict: {conflict_id}")
        row.resolved = True
        row.winner = _winner_name(winner)
        row.resolved_at = datetime.now(UTC)

    def _open_row(
        self, session: Session, table: str, record_id: str
    ) -> SyncConflictRow | None:
        return session.scalars(
            select(SyncConflictRow)
            .where(
                SyncConflictRow.table_name == table,
                SyncConflictRow.record_id == record_id,
                SyncConflictRow.resolved.is_(False),
            )
            .limit(1)
        ).first()


class ConflictResolver:
    """Resolves a local change against the current remote version."""

    def __init__(
        self,
        audit: AuditLogger,
        log: ConflictLog | None = None,
        strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS,
        table_strategies: Mapping[str, ConflictStrategy] | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            audit: Audit logger receiving one event per new conflict.
            log: Conflict log (required by the MANUAL strategy).
            strategy: Default strategy.
            table_strategies: Per-table overrides of ``strategy``.

        Raises:
            ValueError: If MANUAL is configured without a conflict log.
        """
        self._audit = audit
        self._log = log
        self._strategy = ConflictStrategy(strategy)
        self._table_strategies = {
            table: ConflictStrategy(value)
            for table, value in (table_strategies or {}).items()
        }
        strategies = {self._strategy, *self._table_strategies.values()}
        if ConflictStrategy.MANUAL in strategies and log is None:
            raise ValueError("The manual conflict strategy needs a conflict log")

    def strategy_for(self, table: str) -> ConflictStrategy:
        """Get the strategy applied to a table."""
        return self._table_strategies.get(table, self._strategy)

    def resolve(self, entry: ChangeEntry, remote: dict[str, Any] | None) -> Resolution:
        """Decide which version of a record survives.

        Args:
            entry: Pending local change of the record.
            remote: Current remote version, or None if the remote no longer
                has the row.

        Returns:
            The resolution. The audit event and conflict row are already
            recorded.
        """
        strategy = self.strategy_for(entry.table)
        winner = self._decide(strategy, entry, remote)
        resolution = Resolution(winner=winner, entry=entry, remote=remote)

        created = True
        if self._log is not None:
            resolution.conflict_id, created = self._log.record(resolution, strategy)
        if created:
            self._record(resolution, strategy, self._describe(resolution, strategy))

        if winner == Winner.LOCAL and remote is not None:
            # The local winner is pushed on top of the remote version.
            kept = entry.based_on(parse_timestamp(remote["updated_at"]))
            remote_time = remote_version_time(remote)
            if kept.updated_at <= remote_time:
                kept = kept.restamped(remote_time + TICK)
            resolution.entry = kept
        return resolution

    def _decide(
        self,
        strategy: ConflictStrategy,
        entry: ChangeEntry,
        remote: dict[str, Any] | None,
    ) -> Winner | None:
        if strategy == ConflictStrategy.MANUAL:
            return None
        if strategy == ConflictStrategy.LOCAL_WINS:
            return Winner.LOCAL
        if strategy == ConflictStrategy.REMOTE_WINS:
            return Winner.REMOTE
        if remote is None:
            return Winner.LOCAL
        return Winner.LOCAL if entry.updated_at > remote_version_time(remote) else Winner.REMOTE

    def _describe(self, resolution: Resolution, strategy: ConflictStrategy) -> str:
        entry, remote, winner = resolution.entry, resolution.remote, resolution.winner
        if winner is None:
            return "held for manual settlement"
        if remote is None:
            if winner == Winner.LOCAL:
                return "remote row is gone, local version re-created"
            return "remote row is gone, local change dropped"
        if strategy != ConflictStrategy.NEWEST_WINS:
            return f"{_winner_name(winner)} version kept by the {strategy.value} strategy"
        if entry.op == ChangeOp.DELETE:
            if winner == Winner.LOCAL:
                return "local delete is newer, remote row will be deleted"
            return "remote update is not older, record resurrected and local delete dropped"
        if remote.get("deleted_at"):
            if winner == Winner.LOCAL:
                return "local edit is newer than remote delete, record restored"
            return "remote delete is not older, local edit dropped"
        if winner == Winner.LOCAL:
            return "local version is newer and will be pushed"
        return "remote version is not older, local edit dropped"

    def _record(
        self, resolution: Resolution, strategy: ConflictStrategy, outcome: str
    ) -> None:
        entry = resolution.entry
        self._audit.log_event(
            action="sync_conflict",
            description=f"Conflict on {entry.table}/{entry.record_id}: {outcome}",
            severity=Severity.INFO if resolution.local_wins else Severity.WARNING,
            component=COMPONENT,
            metadata={
                "table": entry.table,
                "record_id": entry.record_id,
                "winner": _winner_name(resolution.winner),
                "strategy": strategy.value,
                "conflict_id": resolution.conflict_id,
                "local": {
                    "op": entry.op.value,
                    "updated_at": entry.updated_at.isoformat(),
                    "payload": entry.payload,
                },
                "remote": resolution.remote,
            },
        )
        logger.debug(
            "Resolved %s/%s in favor of %s",
            entry.table,
            entry.record_id,
            _winner_name(resolution.winner),
        )
