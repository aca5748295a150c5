"""Durable queue of local mutations awaiting push.

This module provides:
- ChangeQueue: Persistent queue stored in the local database

Features:
- Ordered by a local monotonic sequence number, never by wall clock
- Coalescing: ``drain`` returns one entry per record with the latest payload
  and every sequence number it replaces
- Entries are removed only by ``acknowledge``, so a crash before a push is
  confirmed re-sends the change on the next cycle
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from shelfsync.client.models import PendingChange
from shelfsync.client.sync.types import ChangeEntry, ChangeOp

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from shelfsync.client.store import LocalStore

logger = logging.getLogger(__name__)


def _coalesce(table: str, rows: list[PendingChange]) -> ChangeEntry:
    """Fold the mutations of one record into a single net change.

    - last mutation is a delete: push a delete
    - first mutation is a create: push a create with the latest payload
    - otherwise: push an update with the latest payload
    """
    first, last = rows[0], rows[-1]
    if last.op == ChangeOp.DELETE.value:
        op = ChangeOp.DELETE
    elif first.op == ChangeOp.CREATE.value:
        op = ChangeOp.CREATE
    else:
        op = ChangeOp.UPDATE
    payload = json.loads(last.payload) if last.payload else None
    return ChangeEntry(
        table=table,
        record_id=last.record_id,
        op=op,
        payload=payload,
        updated_at=last.updated_at,
        seqs=tuple(row.seq for row in rows),
        base_updated_at=first.base_updated_at,
    )


class ChangeQueue:
    """Persistent queue of local changes, one logical queue per table."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def enqueue(
        self,
        table: str,
        op: ChangeOp,
        record_id: str,
        payload: dict[str, Any] | None,
        updated_at: datetime,
        session: Session | None = None,
        base_updated_at: datetime | None = None,
    ) -> int:
        """Record a local mutation.

        Args:
            table: Mirrored table of the record.
            op: Kind of mutation.
            record_id: Record primary key.
            payload: Full JSON-serializable record (None for deletes).
            updated_at: Local timestamp stamped on the mutation.
            session: Join the transaction that wrote the local row.
            base_updated_at: Version of the local row the mutation was made on.

        Returns:
            Sequence number assigned to the entry.
        """
        if session is None:
            with self._store.transaction(table) as own:
                return self.enqueue(
                    table, op, record_id, payload, updated_at, own, base_updated_at
                )

        row = PendingChange(
            table_name=table,
            record_id=record_id,
            op=op.value,
            payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
            updated_at=updated_at,
            base_updated_at=base_updated_at,
        )
        session.add(row)
        session.flush()
        logger.debug("Enqueued %s %s/%s as seq %d", op.value, table, record_id, row.seq)
        return row.seq

    def drain(self, table: str, up_to_seq: int | None = None) -> list[ChangeEntry]:
        """Get the pending changes of a table, coalesced per record.

        Entries stay queued until acknowledged.

        Args:
            table: Mirrored table.
            up_to_seq: Ignore mutations enqueued after this sequence number.

        Returns:
            One entry per record, ordered by the record's first pending seq.
        """
        grouped: dict[str, list[PendingChange]] = {}
        for row in self._rows(table, up_to_seq):
            grouped.setdefault(row.record_id, []).append(row)
        return [_coalesce(table, rows) for rows in grouped.values()]

    def history(self, table: str) -> list[ChangeEntry]:
        """Get every pending mutation of a table as an ordered delta list."""
        return [_coalesce(table, [row]) for row in self._rows(table, None)]

    def pending_for(self, table: str, record_id: str) -> ChangeEntry | None:
        """Get the coalesced pending change of one record, if any."""
        with self._store.read() as session:
            rows = session.scalars(
                select(PendingChange)
                .where(
                    PendingChange.table_name == table,
                    PendingChange.record_id == record_id,
                )
                .order_by(PendingChange.seq)
            ).all()
        if not rows:
            return None
        return _coalesce(table, list(rows))

    def has_pending(self, session: Session, table: str, record_id: str) -> bool:
        """Check inside a transaction whether a record still has queued changes."""
        seq = session.scalar(
            select(PendingChange.seq)
            .where(
                PendingChange.table_name == table,
                PendingChange.record_id == record_id,
            )
            .limit(1)
        )
        return seq is not None

    def acknowledge(
        self, entries: Iterable[ChangeEntry], session: Session | None = None
    ) -> int:
        """Remove pushed (or superseded) entries from the queue.

        Only the sequence numbers carried by the entries are removed, so a
        mutation enqueued while a push was in flight stays queued.

        Returns:
            Number of queue rows removed.
        """
        entries = list(entries)
        if not entries:
            return 0
        if session is None:
            removed = 0
            by_table: dict[str, list[ChangeEntry]] = {}
            for entry in entries:
                by_table.setdefault(entry.table, []).append(entry)
            for table, table_entries in by_table.items():
                with self._store.transaction(table) as own:
                    removed += self.acknowledge(table_entries, own)
            return removed

        seqs = [seq for entry in entries for seq in entry.seqs]
        result = session.execute(delete(PendingChange).where(PendingChange.seq.in_(seqs)))
        return result.rowcount or 0

    def count(self, table: str | None = None) -> int:
        """Count pending mutations, optionally for one table."""
        stmt = select(func.count()).select_from(PendingChange)
        if table is not None:
            stmt = stmt.where(PendingChange.table_name == table)
        with self._store.read() as session:
            return session.scalar(stmt) or 0

    def high_water_mark(self, table: str) -> int:
        """Get the highest pending sequence number of a table (0 if empty)."""
        with self._store.read() as session:
            seq = session.scalar(
                select(func.max(PendingChange.seq)).where(
                    PendingChange.table_name == table
                )
            )
        return seq or 0

    def _rows(self, table: str, up_to_seq: int | None) -> list[PendingChange]:
        stmt = (
            select(PendingChange)
            .where(PendingChange.table_name == table)
            .order_by(PendingChange.seq)
        )
        if up_to_seq is not None:
            stmt = stmt.where(PendingChange.seq <= up_to_seq)
        with self._store.read() as session:
            return list(session.scalars(stmt).all())
