from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    and_,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    selectinload,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CopyCondition(str, enum.Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


# lower rank is allocated first
CONDITION_RANK = {
    CopyCondition.EXCELLENT: 0,
    CopyCondition.GOOD: 1,
    CopyCondition.FAIR: 2,
    CopyCondition.POOR: 3,
}


class LoanStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Base(DeclarativeBase):
    ...


class Author(Base):
    __tablename__ = "authors"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), index=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    books: Mapped[List["Book"]] = relationship(back_populates="author")


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        # deleting a book releases its ISBN
        Index(
            "uq_books_live_isbn",
            "isbn",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_books_available_copies_range",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(255), index=True)
    isbn: Mapped[str] = mapped_column(String(64))
    publication_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    author_id: Mapped[int] = mapped_column(ForeignKey("authors.id"), index=True)
    total_copies: Mapped[int] = mapped_column(Integer, default=0)
    available_copies: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    author: Mapped["Author"] = relationship(back_populates="books")
    copies: Mapped[List["BookCopy"]] = relationship(back_populates="book", order_by="BookCopy.id")
    reservations: Mapped[List["Reservation"]] = relationship(back_populates="book")
    pending_reservations: Mapped[List["Reservation"]] = relationship(
        primaryjoin=lambda: and_(
            Book.id == Reservation.book_id,
            Reservation.status == ReservationStatus.PENDING,
        ),
        order_by=lambda: Reservation.id,
        viewonly=True,
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class BookCopy(Base):
    __tablename__ = "book_copies"

    id: Mapped[int] = mapped_column(primary_key=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id"), index=True)
    condition: Mapped[CopyCondition] = mapped_column(
        Enum(CopyCondition, native_enum=False, length=16), default=CopyCondition.GOOD
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    # withdrawn copies leave the stock but keep their loan history
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    book: Mapped["Book"] = relationship(back_populates="copies")
    loans: Mapped[List["Loan"]] = relationship(back_populates="copy")


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        # a copy has at most one open loan
        Index(
            "uq_loans_open_copy",
            "copy_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
        Index("ix_loans_patron_open", "patron_id", "returned_at"),
        Index("ix_loans_status_due", "status", "due_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    patron_id: Mapped[str] = mapped_column(String(64), index=True)
    copy_id: Mapped[int] = mapped_column(ForeignKey("book_copies.id"))
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id"), index=True)
    borrowed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    due_date: Mapped[datetime] = mapped_column(DateTime)
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus, native_enum=False, length=16), default=LoanStatus.ACTIVE
    )

    copy: Mapped["BookCopy"] = relationship(back_populates="loans")

    @property
    def is_open(self) -> bool:
        """Still held by the patron; a swept OVERDUE loan stays open until returned."""
        return self.returned_at is None


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservations_pending_patron_book",
            "patron_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        # queue scan: pending reservations of a book in insertion order
        Index("ix_reservations_book_queue", "book_id", "status", "id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    patron_id: Mapped[str] = mapped_column(String(64), index=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id", ondelete="CASCADE"))
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, native_enum=False, length=16),
        default=ReservationStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    book: Mapped["Book"] = relationship(back_populates="reservations")


# Eager-load graphs for rows handed back to callers, which read them after
# their session has closed.
def book_detail():
    return (
        selectinload(Book.author),
        selectinload(Book.copies),
        selectinload(Book.pending_reservations),
    )


def loan_detail():
    return (selectinload(Loan.copy).selectinload(BookCopy.book),)


def reservation_detail():
    return (selectinload(Reservation.book),)
