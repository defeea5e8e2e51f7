"""
Library circulation core.

Tracks which physical copy each patron holds, who is queued for a book,
and which loans have run past their due date.
"""

from .config import CirculationPolicy, Settings, settings
from .desk import Actor, CirculationDesk
from .errors import (
    CirculationError,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    PolicyViolationError,
)
from .models import (
    Author,
    Book,
    BookCopy,
    CopyCondition,
    Loan,
    LoanStatus,
    Reservation,
    ReservationStatus,
)

__all__ = [
    # config
    "CirculationPolicy",
    "Settings",
    "settings",
    # facade
    "Actor",
    "CirculationDesk",
    # errors
    "CirculationError",
    "ConflictError",
    "ErrorKind",
    "ForbiddenError",
    "NotFoundError",
    "PolicyViolationError",
    # models
    "Author",
    "Book",
    "BookCopy",
    "CopyCondition",
    "Loan",
    "LoanStatus",
    "Reservation",
    "ReservationStatus",
]
