from sqlalchemy import update

from circulation import CopyCondition
from circulation.models import Book
from circulation.services import InventoryLedger


def test_allocation_prefers_best_condition_then_oldest(desk, make_book, now):
    book = make_book(
        copies=4,
        conditions=[
            CopyCondition.FAIR,
            CopyCondition.EXCELLENT,
            CopyCondition.POOR,
            CopyCondition.EXCELLENT,
        ],
    )
    ledger = InventoryLedger()
    with desk.session_factory() as db:
        order = [copy.condition for copy in ledger.free_copies(db, book.id)]
        ids = [copy.id for copy in ledger.free_copies(db, book.id)]
    assert order == [
        CopyCondition.EXCELLENT,
        CopyCondition.EXCELLENT,
        CopyCondition.FAIR,
        CopyCondition.POOR,
    ]
    assert ids[0] < ids[1]

    picked = [desk.borrow(patron, book.id, now=now).copy_id for patron in ("amy", "bob", "cat")]
    assert picked == ids[:3]


def test_try_allocate_copy_at_zero_returns_none(session_factory, make_book):
    book = make_book(copies=1)
    ledger = InventoryLedger()
    with session_factory() as db:
        handle = ledger.try_allocate_copy(db, book.id)
        assert handle is not None
        assert handle.book_id == book.id
        assert ledger.try_allocate_copy(db, book.id) is None
        db.rollback()


def test_release_never_exceeds_total(session_factory, make_book):
    book = make_book(copies=2)
    ledger = InventoryLedger()
    with session_factory() as db:
        copy_id = ledger.free_copies(db, book.id)[0].id
        ledger.release_copy(db, copy_id)
        db.commit()
        assert ledger.copy_count(db, book.id) == (2, 2)


def test_copy_count_for_missing_book(desk):
    assert desk.copy_count(31337) is None


def test_reconcile_reports_and_repairs_drift(desk, session_factory, make_book, now):
    book = make_book(copies=3)
    desk.borrow("amy", book.id, now=now)
    assert desk.reconcile() == []

    with session_factory() as db:
        db.execute(update(Book).where(Book.id == book.id).values(available_copies=0))
        db.commit()

    [drift] = desk.reconcile()
    assert (drift.book_id, drift.recorded, drift.actual) == (book.id, 0, 2)
    assert desk.copy_count(book.id).available == 0

    desk.reconcile(repair=True)
    assert desk.copy_count(book.id) == (3, 2)
    assert desk.reconcile() == []
