import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from circulation.config import CirculationPolicy
from circulation.db import transaction
from circulation.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PolicyViolationError,
)
from circulation.models import Loan, LoanStatus, loan_detail, utcnow
from circulation.services.inventory import InventoryLedger
from circulation.services.locks import BookLocks
from circulation.services.overdue import is_overdue
from circulation.services.reservations import ReservationQueue, load_book_for_update

logger = logging.getLogger(__name__)


class LoanManager:
    """
    Borrow and return transitions. Each operation holds the book's lock and
    runs as a single transaction: availability check, copy allocation, loan
    rows and counter change commit together or not at all.
    """

    def __init__(
        self,
        ledger: InventoryLedger,
        queue: ReservationQueue,
        policy: CirculationPolicy,
        locks: Optional[BookLocks] = None,
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.policy = policy
        self.locks = locks or queue.locks

    def _due_date(self, borrowed_at: datetime) -> datetime:
        return borrowed_at + timedelta(days=self.policy.loan_period_days)

    def load(self, db: Session, loan_id: int) -> Loan:
        stmt = (
            select(Loan)
            .where(Loan.id == loan_id)
            .options(*loan_detail())
            .execution_options(populate_existing=True)
        )
        return db.scalars(stmt).one()

    def open_loans(self, db: Session, patron_id: str) -> List[Loan]:
        stmt = (
            select(Loan)
            .where(Loan.patron_id == patron_id, Loan.returned_at.is_(None))
            .order_by(Loan.due_date, Loan.id)
            .execution_options(populate_existing=True)
        )
        return list(db.scalars(stmt))

    def borrow(
        self, db: Session, patron_id: str, book_id: int, now: Optional[datetime] = None
    ) -> Loan:
        now = now or utcnow()
        with self.locks.hold(book_id), transaction(db):
            book = load_book_for_update(db, book_id)
            if not book.is_active:
                raise PolicyViolationError("BookInactive", book_id=book_id)
            if book.available_copies <= 0:
                raise PolicyViolationError("NoAvailableCopy", book_id=book_id)

            held = self.open_loans(db, patron_id)
            if any(loan.book_id == book_id for loan in held):
                raise ConflictError("DuplicateLoan", book_id=book_id)
            if len(held) >= self.policy.max_active_loans:
                raise PolicyViolationError(
                    "BorrowLimitExceeded", limit=self.policy.max_active_loans
                )
            late = [loan.id for loan in held if is_overdue(loan.due_date, now)]
            if late:
                raise PolicyViolationError("OutstandingOverdue", loan_ids=late)

            head = self.queue.head(db, book_id)
            if head is not None and head.patron_id != patron_id:
                raise PolicyViolationError("ReservationPriorityViolation", book_id=book_id)

            handle = self.ledger.try_allocate_copy(db, book_id)
            if handle is None:
                raise PolicyViolationError("NoAvailableCopy", book_id=book_id)

            loan = Loan(
                patron_id=patron_id,
                copy_id=handle.copy_id,
                book_id=book_id,
                borrowed_at=now,
                due_date=self._due_date(now),
                status=LoanStatus.ACTIVE,
            )
            db.add(loan)

            # borrowing consumes the patron's own queue slot
            if head is not None:
                self.queue.fulfill(head, now)
            db.flush()

        logger.info(
            "patron %s borrowed book %s copy %s (loan %s, due %s)",
            patron_id,
            book_id,
            handle.copy_id,
            loan.id,
            loan.due_date.isoformat(),
        )
        return self.load(db, loan.id)

    def return_loan(
        self, db: Session, patron_id: str, loan_id: int, now: Optional[datetime] = None
    ) -> Loan:
        """
        Close a loan. If someone is queued for the book the same physical copy
        goes straight to the queue head as a new loan and the counter is left
        alone; otherwise the copy returns to the pool.
        """
        now = now or utcnow()
        with transaction(db):
            book_id = db.scalar(select(Loan.book_id).where(Loan.id == loan_id))
        if book_id is None:
            raise NotFoundError("LoanNotFound", loan_id=loan_id)

        with self.locks.hold(book_id), transaction(db):
            loan = db.execute(
                select(Loan)
                .where(Loan.id == loan_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if loan is None:
                raise NotFoundError("LoanNotFound", loan_id=loan_id)
            if loan.patron_id != patron_id:
                raise ForbiddenError("NotOwner", loan_id=loan_id)
            if not loan.is_open:
                raise ConflictError("AlreadyReturned", loan_id=loan_id)

            late = is_overdue(loan.due_date, now)
            loan.status = LoanStatus.OVERDUE if late else LoanStatus.RETURNED
            loan.returned_at = now
            # closed before any handoff row takes the copy
            db.flush()

            handoff: Optional[Loan] = None
            head = self.queue.head(db, book_id)
            if head is not None:
                handoff = Loan(
                    patron_id=head.patron_id,
                    copy_id=loan.copy_id,
                    book_id=book_id,
                    borrowed_at=now,
                    due_date=self._due_date(now),
                    status=LoanStatus.ACTIVE,
                )
                db.add(handoff)
                self.queue.fulfill(head, now)
                db.flush()
            else:
                self.ledger.release_copy(db, loan.copy_id)

        if handoff is not None:
            logger.info(
                "loan %s returned as %s; copy %s handed to patron %s (loan %s, reservation %s)",
                loan.id,
                loan.status.value,
                loan.copy_id,
                handoff.patron_id,
                handoff.id,
                head.id,
            )
        else:
            logger.info(
                "loan %s returned as %s; copy %s back on the shelf",
                loan.id,
                loan.status.value,
                loan.copy_id,
            )
        return self.load(db, loan.id)

    def list_loan_history(self, db: Session, patron_id: str) -> List[Loan]:
        stmt = (
            select(Loan)
            .where(Loan.patron_id == patron_id)
            .order_by(Loan.borrowed_at.desc(), Loan.id.desc())
            .options(*loan_detail())
        )
        return list(db.scalars(stmt))
