import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from circulation.db import transaction
from circulation.models import Loan, LoanStatus, loan_detail, utcnow

logger = logging.getLogger(__name__)


def is_overdue(due_date: datetime, now: datetime) -> bool:
    """The one overdue predicate: sweep, borrow lockout and return all use it."""
    return now > due_date


class OverdueSweeper:
    def late_candidates(self, db: Session, now: datetime) -> List[int]:
        rows = db.execute(
            select(Loan.id, Loan.due_date)
            .where(
                Loan.status == LoanStatus.ACTIVE,
                Loan.returned_at.is_(None),
                Loan.due_date < now,
            )
            .order_by(Loan.due_date, Loan.id)
        ).all()
        return [loan_id for loan_id, due_date in rows if is_overdue(due_date, now)]

    def sweep(self, db: Session, now: Optional[datetime] = None) -> List[Loan]:
        """
        Reclassify open ACTIVE loans past their due date as OVERDUE and
        return them. A second run with no newly late loans returns [].

        The sweep takes no book lock; each write is guarded so a loan
        returned after it was picked up keeps its frozen status.
        """
        now = now or utcnow()
        with transaction(db):
            swept: List[int] = []
            for loan_id in self.late_candidates(db, now):
                result = db.execute(
                    update(Loan)
                    .where(
                        Loan.id == loan_id,
                        Loan.status == LoanStatus.ACTIVE,
                        Loan.returned_at.is_(None),
                    )
                    .values(status=LoanStatus.OVERDUE)
                )
                if result.rowcount == 1:
                    swept.append(loan_id)

        late: List[Loan] = []
        if swept:
            logger.info("sweep reclassified %d loan(s) as overdue", len(swept))
            late = list(
                db.scalars(
                    select(Loan)
                    .where(Loan.id.in_(swept))
                    .order_by(Loan.due_date, Loan.id)
                    .options(*loan_detail())
                    .execution_options(populate_existing=True)
                )
            )
        return late

    def open_overdue(self, db: Session, now: Optional[datetime] = None) -> List[Loan]:
        """Every loan still held past its due date, oldest due first."""
        now = now or utcnow()
        stmt = (
            select(Loan)
            .where(Loan.returned_at.is_(None), Loan.due_date < now)
            .order_by(Loan.due_date, Loan.id)
            .options(*loan_detail())
        )
        return list(db.scalars(stmt))
