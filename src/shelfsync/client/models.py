"""SQLAlchemy models for the local mirror.

This module defines the local database schema: one table per mirrored
entity, plus the sync bookkeeping tables (cursors, change queue, audit
journal, conflict log).
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetime on top of SQLite's naive DATETIME."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(
        self, value: datetime | None, dialect: Dialect
    ) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class MirroredRecord(Base):
    """Columns shared by every mirrored entity."""

    __abstract__ = True

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)


class BookRow(MirroredRecord):
    """Mirrored ``books`` row."""

    __tablename__ = "books"

    title: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(Text, nullable=False)
    isbn: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    total_copies: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    available_copies: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class CategoryRow(MirroredRecord):
    """Mirrored ``categories`` row."""

    __tablename__ = "categories"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class StudentRow(MirroredRecord):
    """Mirrored ``students`` row."""

    __tablename__ = "students"

    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    class_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)


class ClassRow(MirroredRecord):
    """Mirrored ``classes`` row."""

    __tablename__ = "classes"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    grade_level: Mapped[str | None] = mapped_column(String(32), nullable=True)
    form_level: Mapped[str | None] = mapped_column(String(32), nullable=True)
    max_books_allowed: Mapped[int] = mapped_column(Integer, default=2, nullable=False)


class StaffRow(MirroredRecord):
    """Mirrored ``staff`` row."""

    __tablename__ = "staff"

    staff_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(64), nullable=False)
    department: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)


class BorrowingRow(MirroredRecord):
    """Mirrored ``borrowings`` row."""

    __tablename__ = "borrowings"

    book_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    student_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    borrow_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    return_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="borrowed", nullable=False)
    fine_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)


class FineRow(MirroredRecord):
    """Mirrored ``fines`` row."""

    __tablename__ = "fines"

    borrowing_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    student_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class SyncStateRow(Base):
    """Sync cursor of a mirrored table. Created lazily, never deleted."""

    __tablename__ = "sync_state"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_sync: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    synced_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class PendingChange(Base):
    """A local mutation waiting to be pushed."""

    __tablename__ = "change_queue"

    # AUTOINCREMENT keeps sequence numbers from being reused after deletes.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    op: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Version of the local row the mutation was made on; None for creates.
    base_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_change_queue_record", "table_name", "record_id"),
        {"sqlite_autoincrement": True},
    )


class SyncConflictRow(Base):
    """A conflict between a local change and the remote version of a record."""

    __tablename__ = "sync_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # "update_conflict" or "delete_conflict"
    conflict_type: Mapped[str] = mapped_column(String(32), nullable=False)
    local_op: Mapped[str] = mapped_column(String(16), nullable=False)
    local_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    local_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    winner: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, nullable=False
    )
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_sync_conflicts_record", "table_name", "record_id", "resolved"),
    )


class SystemEvent(Base):
    """Local journal of audit events."""

    __tablename__ = "system_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    component: Mapped[str] = mapped_column(String(64), nullable=False)
    # JSON with sorted keys, so equal metadata compares equal as text
    event_metadata: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, nullable=False
    )
    repeat_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    remote_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("idx_system_events_remote", "remote_id"),)


TABLE_MODELS: dict[str, type[MirroredRecord]] = {
    "books": BookRow,
    "categories": CategoryRow,
    "students": StudentRow,
    "classes": ClassRow,
    "staff": StaffRow,
    "borrowings": BorrowingRow,
    "fines": FineRow,
}
