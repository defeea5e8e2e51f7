"""
Domain faults raised by the circulation core.

Every fault has a ``kind`` (what family of response the boundary layer
should pick), a ``code`` naming the exact rule that failed, and a stable
``message``. Database failures are not wrapped here; they propagate as
raised by SQLAlchemy.
"""

from __future__ import annotations

import enum
from typing import Any, Dict


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    POLICY_VIOLATION = "policy_violation"
    FORBIDDEN = "forbidden"


MESSAGES: Dict[str, str] = {
    # not found
    "BookNotFound": "Book not found",
    "AuthorNotFound": "Author not found",
    "CopyNotFound": "Book copy not found",
    "LoanNotFound": "Borrow record not found",
    "ReservationNotFound": "Reservation not found",
    # conflict
    "DuplicateLoan": "You already have this book borrowed",
    "DuplicateReservation": "You already have a pending reservation for this book",
    "AlreadyBorrowing": "You already have this book borrowed",
    "AlreadyReturned": "This book has already been returned",
    "NotPending": "Only pending reservations can be cancelled",
    "IsbnTaken": "Book with this ISBN already exists",
    "AuthorEmailTaken": "Author with this email already exists",
    "BookHasActiveLoans": "Cannot delete book with active borrows",
    # policy
    "BookInactive": "Book is not available for circulation",
    "NoAvailableCopy": "No copies available for borrowing. You can reserve this book instead.",
    "BorrowLimitExceeded": "You have reached the maximum borrowing limit",
    "ReservationLimitExceeded": "You have reached the maximum reservation limit",
    "OutstandingOverdue": "You have overdue books. Please return them before borrowing new books.",
    "ReservationPriorityViolation": (
        "This book is reserved by other users. You need to reserve it first."
    ),
    "CopyCurrentlyAvailable": (
        "Book is currently available. You can borrow it directly instead of reserving."
    ),
    "CopiesBelowActiveLoans": "Cannot reduce total copies below the number of active borrows",
    # forbidden
    "NotOwner": "You can only act on your own records",
    "AdminRequired": "Admin access required",
}


class CirculationError(Exception):
    kind: ErrorKind

    def __init__(self, code: str, **context: Any) -> None:
        self.code = code
        self.message = MESSAGES[code]
        self.context = context
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code!r})"


class NotFoundError(CirculationError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(CirculationError):
    kind = ErrorKind.CONFLICT


class PolicyViolationError(CirculationError):
    kind = ErrorKind.POLICY_VIOLATION


class ForbiddenError(CirculationError):
    kind = ErrorKind.FORBIDDEN
