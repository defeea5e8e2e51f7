import logging
from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from circulation.config import CirculationPolicy
from circulation.db import transaction
from circulation.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PolicyViolationError,
)
from circulation.models import (
    Book,
    Loan,
    Reservation,
    ReservationStatus,
    reservation_detail,
    utcnow,
)
from circulation.services.locks import BookLocks

logger = logging.getLogger(__name__)


class QueuedReservation(NamedTuple):
    reservation: Reservation
    position: int


def _pending_for_book(book_id: int):
    return and_(
        Reservation.book_id == book_id,
        Reservation.status == ReservationStatus.PENDING,
    )


def load_book_for_update(db: Session, book_id: int) -> Book:
    """Lock the Book row for this unit of work; fail for missing or soft-deleted books."""
    book = db.execute(
        select(Book)
        .where(Book.id == book_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if book is None or book.is_deleted:
        raise NotFoundError("BookNotFound", book_id=book_id)
    return book


class ReservationQueue:
    """
    FIFO of PENDING reservations per book. Order is the insertion id, which
    is assigned under the book lock and so follows commit order; positions
    are always derived, never stored.
    """

    def __init__(self, policy: CirculationPolicy, locks: Optional[BookLocks] = None) -> None:
        self.policy = policy
        self.locks = locks or BookLocks()

    # ---- queries (caller's transaction)
    def head(self, db: Session, book_id: int) -> Optional[Reservation]:
        stmt = (
            select(Reservation)
            .where(_pending_for_book(book_id))
            .order_by(Reservation.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return db.scalars(stmt).first()

    def pending_count(self, db: Session, book_id: int) -> int:
        return db.scalar(select(func.count(Reservation.id)).where(_pending_for_book(book_id)))

    def position(self, db: Session, reservation: Reservation) -> Optional[int]:
        """1-based place in the book's queue, None once the reservation is closed."""
        if reservation.status != ReservationStatus.PENDING:
            return None
        ahead = db.scalar(
            select(func.count(Reservation.id)).where(
                _pending_for_book(reservation.book_id),
                Reservation.id < reservation.id,
            )
        )
        return ahead + 1

    def pending_for_patron(
        self, db: Session, patron_id: str, book_id: int
    ) -> Optional[Reservation]:
        stmt = select(Reservation).where(
            _pending_for_book(book_id), Reservation.patron_id == patron_id
        )
        return db.scalars(stmt).first()

    def fulfill(self, reservation: Reservation, now: datetime) -> None:
        reservation.status = ReservationStatus.FULFILLED
        reservation.closed_at = now

    def list_reservations(self, db: Session, patron_id: str) -> List[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.patron_id == patron_id)
            .order_by(Reservation.created_at.desc(), Reservation.id.desc())
            .options(*reservation_detail())
        )
        return list(db.scalars(stmt))

    def load(self, db: Session, reservation_id: int) -> Reservation:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .options(*reservation_detail())
            .execution_options(populate_existing=True)
        )
        return db.scalars(stmt).one()

    # ---- operations (own unit of work)
    def reserve(
        self, db: Session, patron_id: str, book_id: int, now: Optional[datetime] = None
    ) -> QueuedReservation:
        now = now or utcnow()
        with self.locks.hold(book_id), transaction(db):
            book = load_book_for_update(db, book_id)
            if not book.is_active:
                raise PolicyViolationError("BookInactive", book_id=book_id)

            if self.pending_for_patron(db, patron_id, book_id) is not None:
                raise ConflictError("DuplicateReservation", book_id=book_id)

            borrowing = db.scalar(
                select(func.count(Loan.id)).where(
                    Loan.patron_id == patron_id,
                    Loan.book_id == book_id,
                    Loan.returned_at.is_(None),
                )
            )
            if borrowing:
                raise ConflictError("AlreadyBorrowing", book_id=book_id)

            pending = db.scalar(
                select(func.count(Reservation.id)).where(
                    Reservation.patron_id == patron_id,
                    Reservation.status == ReservationStatus.PENDING,
                )
            )
            if pending >= self.policy.max_pending_reservations:
                raise PolicyViolationError(
                    "ReservationLimitExceeded", limit=self.policy.max_pending_reservations
                )

            if book.available_copies >= 1:
                raise PolicyViolationError(
                    "CopyCurrentlyAvailable", available=book.available_copies
                )

            position = self.pending_count(db, book_id) + 1
            reservation = Reservation(
                patron_id=patron_id,
                book_id=book_id,
                status=ReservationStatus.PENDING,
                created_at=now,
            )
            db.add(reservation)
            db.flush()

        logger.info(
            "patron %s reserved book %s (reservation %s, position %d)",
            patron_id,
            book_id,
            reservation.id,
            position,
        )
        return QueuedReservation(self.load(db, reservation.id), position)

    def cancel(
        self,
        db: Session,
        patron_id: str,
        reservation_id: int,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = now or utcnow()
        with transaction(db):
            book_id = db.scalar(
                select(Reservation.book_id).where(Reservation.id == reservation_id)
            )
        if book_id is None:
            raise NotFoundError("ReservationNotFound", reservation_id=reservation_id)

        with self.locks.hold(book_id), transaction(db):
            reservation = db.execute(
                select(Reservation)
                .where(Reservation.id == reservation_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if reservation is None:
                raise NotFoundError("ReservationNotFound", reservation_id=reservation_id)
            if reservation.patron_id != patron_id:
                raise ForbiddenError("NotOwner", reservation_id=reservation_id)
            if reservation.status != ReservationStatus.PENDING:
                raise ConflictError("NotPending", status=reservation.status.value)

            reservation.status = ReservationStatus.CANCELLED
            reservation.closed_at = now

        logger.info("patron %s cancelled reservation %s", patron_id, reservation_id)
        return self.load(db, reservation_id)
