"""Local-first writes for application code.

This module provides:
- LibraryRepository: Saves and removes records in the local mirror and
  queues the change for the next sync, in a single transaction
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from shelfsync.client.schemas import RecordBase, parse_record
from shelfsync.client.store import model_for, row_to_dict
from shelfsync.client.sync.types import TICK, ChangeOp

if TYPE_CHECKING:
    from shelfsync.client.store import LocalStore
    from shelfsync.client.sync.queue import ChangeQueue

logger = logging.getLogger(__name__)


class LibraryRepository:
    """Writes records locally and records them as pending changes.

    The local clock is only used here, to stamp ``updated_at`` on local
    mutations. Remote timestamps stay authoritative for everything else.
    """

    def __init__(self, store: LocalStore, queue: ChangeQueue) -> None:
        self._store = store
        self._queue = queue

    def get(self, table: str, record_id: str) -> RecordBase | None:
        """Get a record from the local mirror."""
        return self._store.get(table, record_id)

    def list_records(self, table: str) -> list[RecordBase]:
        """List every record of a table."""
        return self._store.scan(table)

    def save(self, table: str, data: dict[str, Any]) -> RecordBase:
        """Create or update a record.

        A missing ``id`` creates a new record. ``created_at`` is kept for
        existing records; ``updated_at`` is always stamped with the current
        time.

        Args:
            table: Mirrored table.
            data: Record fields.

        Returns:
            The validated, stored record.

        Raises:
            RecordValidationError: If the record does not fit the schema.
            StorageError: If the write failed; nothing was queued.
        """
        now = datetime.now(UTC)
        record_id = str(data.get("id") or uuid.uuid4())
        model = model_for(table)

        with self._store.transaction(table) as session:
            existing = session.get(model, record_id)
            values = {key: value for key, value in data.items() if key != "book_count"}
            base = None
            if existing is None:
                op = ChangeOp.CREATE
                values["created_at"] = now
            else:
                op = ChangeOp.UPDATE
                base = existing.updated_at
                values = {**row_to_dict(existing), **values}
                values["created_at"] = existing.created_at
                # Keep local versions strictly increasing even if the clock
                # stepped backwards.
                if now <= existing.updated_at:
                    now = existing.updated_at + TICK
            values["id"] = record_id
            values["updated_at"] = now

            record = parse_record(table, values)
            self._store.upsert(table, record, force=True, session=session)
            self._queue.enqueue(
                table,
                op,
                record_id,
                record.to_payload(),
                record.updated_at,
                session,
                base_updated_at=base,
            )

        logger.debug("Saved %s/%s (%s)", table, record_id, op.value)
        return record

    def remove(self, table: str, record_id: str) -> bool:
        """Delete a record locally and queue the delete.

        Returns:
            True if the record existed.
        """
        with self._store.transaction(table) as session:
            existing = session.get(model_for(table), record_id)
            if existing is None:
                return False
            base = existing.updated_at
            now = max(datetime.now(UTC), base + TICK)
            self._store.delete(table, record_id, session=session)
            self._queue.enqueue(
                table,
                ChangeOp.DELETE,
                record_id,
                None,
                now,
                session,
                base_updated_at=base,
            )

        logger.debug("Removed %s/%s", table, record_id)
        return True

