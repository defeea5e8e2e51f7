import logging
from typing import List, NamedTuple, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from circulation.errors import NotFoundError
from circulation.models import CONDITION_RANK, Book, BookCopy, CopyCondition, Loan

logger = logging.getLogger(__name__)


class CopyHandle(NamedTuple):
    copy_id: int
    book_id: int
    condition: CopyCondition


class CopyCount(NamedTuple):
    total: int
    available: int


class Discrepancy(NamedTuple):
    book_id: int
    recorded: int
    actual: int


_condition_rank = case(
    {condition.value: rank for condition, rank in CONDITION_RANK.items()},
    value=BookCopy.condition,
    else_=len(CONDITION_RANK),
)


def _open_loan_exists():
    return (
        select(Loan.id)
        .where(Loan.copy_id == BookCopy.id, Loan.returned_at.is_(None))
        .exists()
    )


class InventoryLedger:
    """
    Owns ``Book.available_copies`` and the "which copy is free" question.
    Every method works inside the caller's transaction and never commits.
    """

    def free_copies(self, db: Session, book_id: int) -> List[BookCopy]:
        """Free copies of a book in allocation order."""
        stmt = (
            select(BookCopy)
            .where(
                BookCopy.book_id == book_id,
                BookCopy.withdrawn_at.is_(None),
                ~_open_loan_exists(),
            )
            .order_by(_condition_rank, BookCopy.created_at, BookCopy.id)
        )
        return list(db.scalars(stmt))

    def try_allocate_copy(self, db: Session, book_id: int) -> Optional[CopyHandle]:
        """
        Reserve the best free copy and decrement the counter.
        Returns None when the counter is already at zero or no copy is free.
        """
        candidates = self.free_copies(db, book_id)
        if not candidates:
            return None
        result = db.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_copies > 0)
            .values(available_copies=Book.available_copies - 1)
        )
        if result.rowcount != 1:
            return None
        copy = candidates[0]
        return CopyHandle(copy.id, copy.book_id, copy.condition)

    def release_copy(self, db: Session, copy_id: int) -> None:
        """Put a copy back into the general pool (+1 on its book's counter)."""
        copy = db.get(BookCopy, copy_id)
        if copy is None:
            raise NotFoundError("CopyNotFound", copy_id=copy_id)
        result = db.execute(
            update(Book)
            .where(Book.id == copy.book_id, Book.available_copies < Book.total_copies)
            .values(available_copies=Book.available_copies + 1)
        )
        if result.rowcount != 1:
            logger.warning(
                "release of copy %s ignored: book %s already at full availability",
                copy_id,
                copy.book_id,
            )

    def copy_count(self, db: Session, book_id: int) -> Optional[CopyCount]:
        row = db.execute(
            select(Book.total_copies, Book.available_copies).where(Book.id == book_id)
        ).first()
        if row is None:
            return None
        return CopyCount(total=row.total_copies, available=row.available_copies)

    def open_loan_count(self, db: Session, book_id: int) -> int:
        return db.scalar(
            select(func.count(Loan.id)).where(
                Loan.book_id == book_id, Loan.returned_at.is_(None)
            )
        )

    def reconcile(self, db: Session, repair: bool = False) -> List[Discrepancy]:
        """
        Offline consistency check: compare every counter with
        ``total_copies - open loans``. With ``repair`` the counters are
        rewritten in the caller's transaction.
        """
        open_loans = (
            select(Loan.book_id, func.count(Loan.id).label("n"))
            .where(Loan.returned_at.is_(None))
            .group_by(Loan.book_id)
            .subquery()
        )
        rows = db.execute(
            select(Book.id, Book.total_copies, Book.available_copies, open_loans.c.n)
            .outerjoin(open_loans, open_loans.c.book_id == Book.id)
            .order_by(Book.id)
        ).all()

        found: List[Discrepancy] = []
        for book_id, total, available, n in rows:
            actual = total - (n or 0)
            if actual != available:
                found.append(Discrepancy(book_id, available, actual))
                logger.warning(
                    "book %s available_copies=%s but expected %s", book_id, available, actual
                )
                if repair:
                    db.execute(
                        update(Book).where(Book.id == book_id).values(available_copies=actual)
                    )
        return found
