"""Local mirror of the remote library schema.

This module provides:
- LocalStore: SQLite database (via SQLAlchemy) holding one table per
  mirrored entity plus sync bookkeeping
- Per-table transactions used by the sync engine to apply a batch and its
  cursor atomically
- Idempotent upsert keyed on ``updated_at``
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shelfsync.client.models import TABLE_MODELS, Base, BookRow, MirroredRecord
from shelfsync.client.schemas import RecordBase, parse_record
from shelfsync.client.sync.types import StorageError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Lock names for the bookkeeping tables that are not tied to a mirrored table.
SYSTEM_EVENTS = "system_events"


def model_for(table: str) -> type[MirroredRecord]:
    """Get the ORM model of a mirrored table.

    Raises:
        ValueError: If the table is not mirrored.
    """
    try:
        return TABLE_MODELS[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table}") from None


def row_to_dict(row: MirroredRecord) -> dict[str, Any]:
    """Convert an ORM row to a plain dictionary of column values."""
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


class LocalStore:
    """SQLite store for the local mirror.

    Uses WAL mode so readers never block on the sync engine. SQLite admits a
    single writer, so every transaction also holds a store-wide write lock in
    addition to the lock of its table.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        Base.metadata.create_all(self._engine)

        self._write_lock = threading.RLock()
        self._table_locks = {
            name: threading.RLock() for name in (*TABLE_MODELS, SYSTEM_EVENTS)
        }

    @property
    def path(self) -> Path:
        """Path of the database file."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    # === Transactions ===

    @contextmanager
    def transaction(self, table: str) -> Iterator[Session]:
        """Open a write transaction scoped to a table.

        The session commits when the block exits normally and rolls back
        otherwise. Never hold it across a network call.

        Args:
            table: Mirrored table (or ``system_events``) being written.

        Yields:
            Session bound to the transaction.

        Raises:
            StorageError: If SQLite fails to execute or commit the batch.
        """
        try:
            lock = self._table_locks[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

        with lock, self._write_lock:
            session = Session(self._engine, expire_on_commit=False)
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error("Transaction on %s failed: %s", table, e)
                raise StorageError(f"Transaction on {table} failed: {e}") from e
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def read(self) -> Iterator[Session]:
        """Open a read-only session.

        Raises:
            StorageError: If the query fails.
        """
        session = Session(self._engine)
        try:
            yield session
        except SQLAlchemyError as e:
            raise StorageError(f"Read failed: {e}") from e
        finally:
            session.close()

    # === Record operations ===

    def get(self, table: str, record_id: str) -> RecordBase | None:
        """Get a record by primary key.

        Args:
            table: Mirrored table.
            record_id: Record primary key.

        Returns:
            Validated record, or None if absent.
        """
        model = model_for(table)
        with self.read() as session:
            row = session.get(model, record_id)
            if row is None:
                return None
            return self._to_record(session, table, row)

    def scan(
        self,
        table: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[RecordBase]:
        """Range-scan a table by ``updated_at``.

        Args:
            table: Mirrored table.
            since: Only return records updated strictly after this time.
            limit: Maximum number of records.

        Returns:
            Records ordered by (updated_at, id).
        """
        model = model_for(table)
        stmt = select(model).order_by(model.updated_at, model.id)
        if since is not None:
            stmt = stmt.where(model.updated_at > since)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.read() as session:
            rows = session.scalars(stmt).all()
            return [self._to_record(session, table, row) for row in rows]

    def upsert(
        self,
        table: str,
        record: RecordBase,
        *,
        force: bool = False,
        session: Session | None = None,
    ) -> bool:
        """Insert or update a record.

        Applying a version whose ``updated_at`` is older than or equal to the
        stored one is a no-op, so replaying a pull is harmless.

        Args:
            table: Mirrored table.
            record: Validated record.
            force: Overwrite even if the stored version is not older
                (used to apply the winner of a tied conflict).
            session: Join an open transaction instead of opening one.

        Returns:
            True if the row was written.
        """
        if session is None:
            with self.transaction(table) as own:
                return self.upsert(table, record, force=force, session=own)

        model = model_for(table)
        values = record.to_row()
        row = session.get(model, record.id)
        if row is None:
            session.add(model(**values))
            return True
        if not force and record.updated_at <= row.updated_at:
            return False
        for key, value in values.items():
            setattr(row, key, value)
        return True

    def delete(
        self, table: str, record_id: str, *, session: Session | None = None
    ) -> bool:
        """Delete a record.

        Returns:
            True if a row was removed.
        """
        if session is None:
            with self.transaction(table) as own:
                return self.delete(table, record_id, session=own)

        row = session.get(model_for(table), record_id)
        if row is None:
            return False
        session.delete(row)
        return True

    def upsert_batch(self, table: str, records: list[RecordBase]) -> int:
        """Upsert records in a single transaction.

        Returns:
            Number of rows written.
        """
        with self.transaction(table) as session:
            return sum(
                1 for record in records if self.upsert(table, record, session=session)
            )

    def clear(self, table: str, session: Session) -> int:
        """Delete every row of a mirrored table inside an open transaction.

        Returns:
            Number of rows removed.
        """
        result = session.execute(delete(model_for(table)))
        return result.rowcount or 0

    def counts(self) -> dict[str, int]:
        """Count rows per mirrored table."""
        with self.read() as session:
            return {
                table: session.scalar(select(func.count()).select_from(model)) or 0
                for table, model in TABLE_MODELS.items()
            }

    def _to_record(
        self, session: Session, table: str, row: MirroredRecord
    ) -> RecordBase:
        data = row_to_dict(row)
        if table == "categories":
            data["book_count"] = session.scalar(
                select(func.count())
                .select_from(BookRow)
                .where(BookRow.category_id == row.id)
            )
        return parse_record(table, data)
