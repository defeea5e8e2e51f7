import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.db import transaction
from circulation.errors import ConflictError, NotFoundError, PolicyViolationError
from circulation.models import Author, Book, BookCopy, CopyCondition, book_detail, utcnow
from circulation.services.inventory import InventoryLedger
from circulation.services.locks import BookLocks
from circulation.services.reservations import load_book_for_update

logger = logging.getLogger(__name__)


class CatalogService:
    """Authors, books and the physical copies behind each book's counters."""

    def __init__(self, ledger: InventoryLedger, locks: Optional[BookLocks] = None) -> None:
        self.ledger = ledger
        self.locks = locks or BookLocks()

    # ---- authors
    def create_author(
        self, db: Session, *, name: str, email: str, bio: Optional[str] = None
    ) -> Author:
        with transaction(db):
            existing = db.scalars(select(Author).where(Author.email == email)).first()
            if existing:
                raise ConflictError("AuthorEmailTaken", email=email)
            author = Author(name=name, email=email, bio=bio)
            db.add(author)
            db.flush()
        return author

    def list_authors(self, db: Session) -> List[Author]:
        return list(
            db.scalars(select(Author).where(Author.deleted_at.is_(None)).order_by(Author.name))
        )

    def delete_author(
        self, db: Session, author_id: int, now: Optional[datetime] = None
    ) -> Author:
        with transaction(db):
            author = db.get(Author, author_id)
            if author is None or author.deleted_at is not None:
                raise NotFoundError("AuthorNotFound", author_id=author_id)
            author.deleted_at = now or utcnow()
        return author

    # ---- books
    def _isbn_holder(self, db: Session, isbn: str) -> Optional[int]:
        """Id of the live book holding ``isbn``; deleted books release theirs."""
        return db.scalar(select(Book.id).where(Book.isbn == isbn, Book.deleted_at.is_(None)))

    def _load_book(self, db: Session, book_id: int) -> Book:
        stmt = (
            select(Book)
            .where(Book.id == book_id)
            .options(*book_detail())
            .execution_options(populate_existing=True)
        )
        return db.scalars(stmt).one()

    def register_book(
        self,
        db: Session,
        *,
        title: str,
        isbn: str,
        author_id: int,
        publication_year: Optional[int] = None,
        copies: int = 1,
        conditions: Optional[Sequence[CopyCondition]] = None,
    ) -> Book:
        """
        Register a book with ``copies`` physical copies, all available.
        ``conditions`` grades the copies in order; missing grades default to GOOD.
        """
        conditions = list(conditions or [])
        try:
            with transaction(db):
                # check first: clearer than relying on the unique constraint
                if self._isbn_holder(db, isbn) is not None:
                    raise ConflictError("IsbnTaken", isbn=isbn)
                author = db.get(Author, author_id)
                if author is None or author.deleted_at is not None:
                    raise NotFoundError("AuthorNotFound", author_id=author_id)

                book = Book(
                    title=title,
                    isbn=isbn,
                    publication_year=publication_year,
                    author_id=author_id,
                    total_copies=copies,
                    available_copies=copies,
                    is_active=True,
                )
                db.add(book)
                db.flush()
                for i in range(copies):
                    condition = conditions[i] if i < len(conditions) else CopyCondition.GOOD
                    db.add(BookCopy(book_id=book.id, condition=condition))
                db.flush()
        except IntegrityError:
            # lost a race with a concurrent registration of the same ISBN
            if self._isbn_holder(db, isbn) is not None:
                raise ConflictError("IsbnTaken", isbn=isbn)
            raise

        logger.info("registered book %s (%s) with %d copies", book.id, isbn, copies)
        return self._load_book(db, book.id)

    def get_book(self, db: Session, book_id: int) -> Book:
        book = db.get(Book, book_id, options=book_detail(), populate_existing=True)
        if book is None or book.is_deleted:
            raise NotFoundError("BookNotFound", book_id=book_id)
        return book

    def list_books(self, db: Session) -> List[Book]:
        stmt = (
            select(Book)
            .where(Book.is_active.is_(True), Book.deleted_at.is_(None))
            .order_by(Book.created_at.desc(), Book.id.desc())
            .options(*book_detail())
        )
        return list(db.scalars(stmt))

    def add_copy(
        self, db: Session, book_id: int, condition: CopyCondition = CopyCondition.GOOD
    ) -> BookCopy:
        with self.locks.hold(book_id), transaction(db):
            book = load_book_for_update(db, book_id)
            copy = BookCopy(book_id=book.id, condition=condition)
            db.add(copy)
            book.total_copies += 1
            book.available_copies += 1
            db.flush()
        logger.info("added %s copy %s to book %s", condition.value, copy.id, book_id)
        return copy

    def update_book(
        self,
        db: Session,
        book_id: int,
        *,
        title: Optional[str] = None,
        isbn: Optional[str] = None,
        publication_year: Optional[int] = None,
        total_copies: Optional[int] = None,
        is_active: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Book:
        now = now or utcnow()
        with self.locks.hold(book_id), transaction(db):
            book = load_book_for_update(db, book_id)

            if isbn is not None and isbn != book.isbn:
                if self._isbn_holder(db, isbn) is not None:
                    raise ConflictError("IsbnTaken", isbn=isbn)
                book.isbn = isbn

            if total_copies is not None and total_copies != book.total_copies:
                self._resize_stock(db, book, total_copies, now)

            if title is not None:
                book.title = title
            if publication_year is not None:
                book.publication_year = publication_year
            if is_active is not None:
                book.is_active = is_active
            db.flush()
        return self._load_book(db, book_id)

    def _resize_stock(self, db: Session, book: Book, total: int, now: datetime) -> None:
        on_loan = self.ledger.open_loan_count(db, book.id)
        if total < on_loan:
            raise PolicyViolationError(
                "CopiesBelowActiveLoans", requested=total, on_loan=on_loan
            )

        stock = db.scalar(
            select(func.count(BookCopy.id)).where(
                BookCopy.book_id == book.id, BookCopy.withdrawn_at.is_(None)
            )
        )
        if total > stock:
            for _ in range(total - stock):
                db.add(BookCopy(book_id=book.id, condition=CopyCondition.GOOD))
        elif total < stock:
            # withdraw free copies, worst first
            for copy in list(reversed(self.ledger.free_copies(db, book.id)))[: stock - total]:
                copy.withdrawn_at = now

        logger.info(
            "book %s stock resized %d -> %d (%d on loan)", book.id, stock, total, on_loan
        )
        book.total_copies = total
        book.available_copies = total - on_loan

    def delete_book(self, db: Session, book_id: int, now: Optional[datetime] = None) -> Book:
        with self.locks.hold(book_id), transaction(db):
            book = load_book_for_update(db, book_id)
            if self.ledger.open_loan_count(db, book_id) > 0:
                raise ConflictError("BookHasActiveLoans", book_id=book_id)
            book.deleted_at = now or utcnow()
        logger.info("book %s soft-deleted", book_id)
        return self._load_book(db, book_id)
