from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from circulation.config import CirculationPolicy, settings
from circulation.db import SessionLocal, transaction
from circulation.errors import ForbiddenError
from circulation.models import Author, Book, BookCopy, CopyCondition, Loan, Reservation
from circulation.services import (
    BookLocks,
    CatalogService,
    CopyCount,
    Discrepancy,
    InventoryLedger,
    LoanManager,
    OverdueSweeper,
    QueuedReservation,
    ReservationQueue,
)


@dataclass(frozen=True)
class Actor:
    """Trusted caller identity handed over by the authentication layer."""

    patron_id: str
    is_admin: bool = False


class CirculationDesk:
    """
    Entry point for the presentation layer: wires the services together and
    gives every call its own session.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        policy: Optional[CirculationPolicy] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.policy = policy or settings.policy()

        self.locks = BookLocks()
        self.ledger = InventoryLedger()
        self.queue = ReservationQueue(self.policy, self.locks)
        self.loans = LoanManager(self.ledger, self.queue, self.policy, self.locks)
        self.sweeper = OverdueSweeper()
        self.catalog = CatalogService(self.ledger, self.locks)

    # ---- circulation
    def borrow(self, patron_id: str, book_id: int, now: Optional[datetime] = None) -> Loan:
        with self.session_factory() as db:
            return self.loans.borrow(db, patron_id, book_id, now=now)

    def return_loan(self, patron_id: str, loan_id: int, now: Optional[datetime] = None) -> Loan:
        with self.session_factory() as db:
            return self.loans.return_loan(db, patron_id, loan_id, now=now)

    def reserve(
        self, patron_id: str, book_id: int, now: Optional[datetime] = None
    ) -> QueuedReservation:
        with self.session_factory() as db:
            return self.queue.reserve(db, patron_id, book_id, now=now)

    def cancel_reservation(
        self, patron_id: str, reservation_id: int, now: Optional[datetime] = None
    ) -> Reservation:
        with self.session_factory() as db:
            return self.queue.cancel(db, patron_id, reservation_id, now=now)

    def list_loan_history(self, patron_id: str) -> List[Loan]:
        with self.session_factory() as db:
            return self.loans.list_loan_history(db, patron_id)

    def list_reservations(self, patron_id: str) -> List[Reservation]:
        with self.session_factory() as db:
            return self.queue.list_reservations(db, patron_id)

    def queue_position(self, reservation_id: int) -> Optional[int]:
        with self.session_factory() as db:
            reservation = db.get(Reservation, reservation_id)
            if reservation is None:
                return None
            return self.queue.position(db, reservation)

    # ---- overdue
    def sweep(self, now: Optional[datetime] = None) -> List[Loan]:
        with self.session_factory() as db:
            return self.sweeper.sweep(db, now=now)

    def list_overdue_loans(self, actor: Actor, now: Optional[datetime] = None) -> List[Loan]:
        """Admin report: reclassify late loans, then list every one still out."""
        if not actor.is_admin:
            raise ForbiddenError("AdminRequired", patron_id=actor.patron_id)
        with self.session_factory() as db:
            self.sweeper.sweep(db, now=now)
            return self.sweeper.open_overdue(db, now=now)

    # ---- inventory
    def copy_count(self, book_id: int) -> Optional[CopyCount]:
        with self.session_factory() as db:
            return self.ledger.copy_count(db, book_id)

    def reconcile(self, repair: bool = False) -> List[Discrepancy]:
        with self.session_factory() as db, transaction(db):
            return self.ledger.reconcile(db, repair=repair)

    # ---- catalog
    def create_author(self, name: str, email: str, bio: Optional[str] = None) -> Author:
        with self.session_factory() as db:
            return self.catalog.create_author(db, name=name, email=email, bio=bio)

    def list_authors(self) -> List[Author]:
        with self.session_factory() as db:
            return self.catalog.list_authors(db)

    def delete_author(self, author_id: int) -> Author:
        with self.session_factory() as db:
            return self.catalog.delete_author(db, author_id)

    def register_book(
        self,
        title: str,
        isbn: str,
        author_id: int,
        publication_year: Optional[int] = None,
        copies: int = 1,
        conditions: Optional[Sequence[CopyCondition]] = None,
    ) -> Book:
        with self.session_factory() as db:
            return self.catalog.register_book(
                db,
                title=title,
                isbn=isbn,
                author_id=author_id,
                publication_year=publication_year,
                copies=copies,
                conditions=conditions,
            )

    def get_book(self, book_id: int) -> Book:
        with self.session_factory() as db:
            return self.catalog.get_book(db, book_id)

    def list_books(self) -> List[Book]:
        with self.session_factory() as db:
            return self.catalog.list_books(db)

    def add_copy(self, book_id: int, condition: CopyCondition = CopyCondition.GOOD) -> BookCopy:
        with self.session_factory() as db:
            return self.catalog.add_copy(db, book_id, condition)

    def update_book(self, book_id: int, **changes) -> Book:
        with self.session_factory() as db:
            return self.catalog.update_book(db, book_id, **changes)

    def delete_book(self, book_id: int) -> Book:
        with self.session_factory() as db:
            return self.catalog.delete_book(db, book_id)
