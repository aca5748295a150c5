"""Pydantic schemas for the mirrored library entities.

Remote rows arrive as loose JSON. Every row crosses ``parse_record`` before it
touches the local store, so the rest of the engine only sees closed, validated
record types.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from shelfsync.client.sync.types import RecordValidationError

# A backend whose day starts ahead of UTC may mark a loan overdue one UTC
# day early.
OVERDUE_SLACK = timedelta(days=1)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class RecordBase(BaseModel):
    """Fields shared by every mirrored record."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    created_at: datetime
    updated_at: datetime
    # Set by the remote when a row is soft-deleted; never stored locally.
    deleted_at: datetime | None = Field(default=None, exclude=True)

    @field_validator("created_at", "updated_at", "deleted_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def is_deleted(self) -> bool:
        """Check if the remote marked this record as deleted."""
        return self.deleted_at is not None

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the remote REST API."""
        return self.model_dump(mode="json")

    def to_row(self) -> dict[str, Any]:
        """Serialize to local column values."""
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in self.model_dump().items()
        }


# === Catalogue ===


class Book(RecordBase):
    """A catalogued title and its copy counts."""

    title: str
    author: str
    isbn: str | None = None
    category_id: str | None = None
    total_copies: int = Field(default=1, ge=0)
    available_copies: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def _check_copies(self) -> Book:
        if self.available_copies > self.total_copies:
            raise ValueError(
                f"available_copies ({self.available_copies}) exceeds "
                f"total_copies ({self.total_copies})"
            )
        return self


class Category(RecordBase):
    """A book category. ``book_count`` is derived from the local books table."""

    name: str
    description: str | None = None
    book_count: int | None = Field(default=None, exclude=True)


# === People ===


class Student(RecordBase):
    """A student who may borrow books."""

    student_id: str
    name: str
    email: str | None = None
    class_id: str | None = None
    status: str = "active"


class SchoolClass(RecordBase):
    """A class grouping students, with its borrowing allowance."""

    name: str
    grade_level: str | None = None
    form_level: str | None = None
    max_books_allowed: int = Field(default=2, ge=0)


class Staff(RecordBase):
    """A staff member."""

    staff_id: str
    name: str
    role: str
    department: str | None = None
    status: str = "active"


# === Circulation ===


class BorrowingStatus(str, Enum):
    """Lifecycle status of a borrowing."""

    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


class FineStatus(str, Enum):
    """Payment status of a fine."""

    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


class Borrowing(RecordBase):
    """A loan of a book to a student.

    Invariants:
        ``return_date`` is set if and only if the status is ``returned``.
        The status is ``overdue`` only when ``due_date`` has passed and the
        book has not been returned. Dates are compared in UTC, with one day
        of slack for backends whose day starts ahead of UTC.
    """

    book_id: str
    student_id: str
    borrow_date: date
    due_date: date
    return_date: date | None = None
    status: BorrowingStatus = BorrowingStatus.BORROWED
    fine_amount: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_status(self) -> Borrowing:
        returned = self.status == BorrowingStatus.RETURNED
        if returned and self.return_date is None:
            raise ValueError("returned borrowing has no return_date")
        if not returned and self.return_date is not None:
            raise ValueError(f"{self.status.value} borrowing has a return_date")
        if (
            self.status == BorrowingStatus.OVERDUE
            and self.due_date >= _today() + OVERDUE_SLACK
        ):
            raise ValueError(f"borrowing is not past its due date {self.due_date}")
        return self

    def is_overdue(self, today: date | None = None) -> bool:
        """Check if the loan is past due and not returned."""
        today = today or _today()
        return self.return_date is None and self.due_date < today


class Fine(RecordBase):
    """A fine charged to a student."""

    borrowing_id: str | None = None
    student_id: str
    amount: Decimal = Field(ge=0)
    reason: str | None = None
    status: FineStatus = FineStatus.PENDING
    paid_date: date | None = None


def _today() -> date:
    return datetime.now(UTC).date()


RECORD_TYPES: dict[str, type[RecordBase]] = {
    "books": Book,
    "categories": Category,
    "students": Student,
    "classes": SchoolClass,
    "staff": Staff,
    "borrowings": Borrowing,
    "fines": Fine,
}


def record_type(table: str) -> type[RecordBase]:
    """Get the record schema of a table.

    Raises:
        ValueError: If the table is not mirrored.
    """
    try:
        return RECORD_TYPES[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table}") from None


def parse_record(table: str, data: dict[str, Any]) -> RecordBase:
    """Validate a loose row into the closed record type of its table.

    Args:
        table: Table the row belongs to.
        data: Row as received from the remote or the local store.

    Returns:
        Validated record.

    Raises:
        RecordValidationError: If the row does not fit the schema.
    """
    model = record_type(table)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        record_id = data.get("id") if isinstance(data, dict) else None
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}"
            for err in e.errors()
        )
        raise RecordValidationError(table, record_id, errors) from e
