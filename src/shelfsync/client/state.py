"""Per-table sync cursors.

This module provides:
- SyncStateTracker: Reads and advances the ``sync_state`` cursor of each table

Architecture:
    A cursor is the highest remote ``updated_at`` whose record has been
    durably applied locally. It is advanced inside the same transaction as
    the batch it covers, so a crash can never leave a cursor ahead of the
    data. Cursors only move forward; ``reset`` is the single way back.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from shelfsync.client.models import SyncStateRow
from shelfsync.client.sync.types import EPOCH, Cursor

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from shelfsync.client.store import LocalStore

logger = logging.getLogger(__name__)


def _cursor_from_row(table: str, row: SyncStateRow | None) -> Cursor:
    if row is None:
        return Cursor(table=table)
    return Cursor(
        table=table,
        last_sync=row.last_sync or EPOCH,
        synced_records=row.synced_records,
        completed_at=row.completed_at,
    )


class SyncStateTracker:
    """Tracks how far each table has been synced."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def get_cursor(self, table: str, session: Session | None = None) -> Cursor:
        """Get the cursor of a table.

        A table that was never synced gets the zero-value cursor (epoch,
        zero records).
        """
        if session is not None:
            return _cursor_from_row(table, session.get(SyncStateRow, table))
        with self._store.read() as own:
            return _cursor_from_row(table, own.get(SyncStateRow, table))

    def list_cursors(self) -> list[Cursor]:
        """Get every cursor that has been written, ordered by table name."""
        with self._store.read() as session:
            rows = session.scalars(
                select(SyncStateRow).order_by(SyncStateRow.table_name)
            ).all()
            return [_cursor_from_row(row.table_name, row) for row in rows]

    def advance_cursor(
        self,
        table: str,
        new_timestamp: datetime | None,
        count: int,
        session: Session | None = None,
    ) -> Cursor:
        """Advance the cursor of a table.

        Args:
            table: Mirrored table.
            new_timestamp: Highest remote ``updated_at`` in the applied batch,
                or None if the batch pulled nothing.
            count: Number of records the batch applied.
            session: Transaction of the batch. Pass it so the cursor commits
                together with the data.

        Returns:
            The cursor after the update. ``last_sync`` never decreases.
        """
        if session is None:
            with self._store.transaction(table) as own:
                return self.advance_cursor(table, new_timestamp, count, own)

        row = session.get(SyncStateRow, table)
        if row is None:
            row = SyncStateRow(table_name=table, last_sync=None, synced_records=0)
            session.add(row)

        current = row.last_sync or EPOCH
        if new_timestamp is not None:
            if new_timestamp > current:
                row.last_sync = new_timestamp
            elif new_timestamp < current:
                logger.debug(
                    "Ignoring cursor rewind for %s: %s < %s",
                    table,
                    new_timestamp.isoformat(),
                    current.isoformat(),
                )
        row.synced_records = count
        row.completed_at = datetime.now(UTC)
        return _cursor_from_row(table, row)

    def reset(self, table: str) -> int:
        """Force a full resync of a table.

        Clears the table's mirrored rows and rewinds its cursor to epoch.
        Pending local changes are kept and pushed on the next cycle.

        Returns:
            Number of local rows removed.
        """
        with self._store.transaction(table) as session:
            removed = self._store.clear(table, session)
            row = session.get(SyncStateRow, table)
            if row is None:
                session.add(
                    SyncStateRow(table_name=table, last_sync=None, synced_records=0)
                )
            else:
                row.last_sync = None
                row.synced_records = 0
                row.completed_at = None
        logger.info("Reset %s: %d local rows cleared, cursor rewound", table, removed)
        return removed
