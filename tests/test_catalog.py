from datetime import timedelta

import pytest

from circulation import ConflictError, CopyCondition, NotFoundError, PolicyViolationError


def test_register_book_creates_available_copies(desk, author):
    book = desk.register_book(
        title="A Wizard of Earthsea",
        isbn="9780547773742",
        author_id=author.id,
        publication_year=1968,
        copies=3,
    )

    assert book.total_copies == 3
    assert book.available_copies == 3
    assert book.is_active
    assert desk.get_book(book.id).title == "A Wizard of Earthsea"
    assert [b.id for b in desk.list_books()] == [book.id]


def test_register_book_conflicts(desk, author, make_book):
    book = make_book()

    with pytest.raises(ConflictError) as exc:
        desk.register_book(title="Copy", isbn=book.isbn, author_id=author.id)
    assert exc.value.code == "IsbnTaken"

    with pytest.raises(NotFoundError) as exc:
        desk.register_book(title="Orphan", isbn="9781111111111", author_id=777)
    assert exc.value.code == "AuthorNotFound"


def test_author_email_is_unique(desk, author):
    with pytest.raises(ConflictError) as exc:
        desk.create_author("Someone Else", author.email)
    assert exc.value.code == "AuthorEmailTaken"


def test_deleted_author_is_hidden(desk, author):
    desk.create_author("Octavia E. Butler", "octavia@example.com")
    desk.delete_author(author.id)

    assert [a.name for a in desk.list_authors()] == ["Octavia E. Butler"]
    with pytest.raises(NotFoundError):
        desk.delete_author(author.id)


def test_add_copy_bumps_both_counters(desk, make_book, assert_consistent):
    book = make_book(copies=1)

    copy = desk.add_copy(book.id, CopyCondition.EXCELLENT)

    assert copy.condition == CopyCondition.EXCELLENT
    assert desk.copy_count(book.id) == (2, 2)
    assert_consistent()


def test_shrinking_stock_withdraws_free_copies(desk, make_book, now, assert_consistent):
    book = make_book(copies=3)
    desk.borrow("amy", book.id, now=now)

    desk.update_book(book.id, total_copies=1)
    assert desk.copy_count(book.id) == (1, 0)
    assert_consistent()

    with pytest.raises(PolicyViolationError) as exc:
        desk.update_book(book.id, total_copies=0)
    assert exc.value.code == "CopiesBelowActiveLoans"
    assert desk.copy_count(book.id) == (1, 0)

    # withdrawn copies are never handed out again
    with pytest.raises(PolicyViolationError) as exc:
        desk.borrow("bob", book.id, now=now)
    assert exc.value.code == "NoAvailableCopy"


def test_growing_stock_adds_copies(desk, make_book, now, assert_consistent):
    book = make_book(copies=1)
    desk.borrow("amy", book.id, now=now)

    desk.update_book(book.id, total_copies=4, title="The Dispossessed (reissue)")

    updated = desk.get_book(book.id)
    assert updated.title == "The Dispossessed (reissue)"
    assert desk.copy_count(book.id) == (4, 3)
    assert_consistent()


def test_update_isbn_collision(desk, make_book):
    first, second = make_book(), make_book()

    with pytest.raises(ConflictError) as exc:
        desk.update_book(second.id, isbn=first.isbn)
    assert exc.value.code == "IsbnTaken"


def test_delete_book_with_open_loan(desk, make_book, now):
    book = make_book()
    loan = desk.borrow("amy", book.id, now=now)

    with pytest.raises(ConflictError) as exc:
        desk.delete_book(book.id)
    assert exc.value.code == "BookHasActiveLoans"

    desk.return_loan("amy", loan.id, now=now + timedelta(days=1))
    desk.delete_book(book.id)
    assert desk.list_books() == []
    with pytest.raises(NotFoundError):
        desk.get_book(book.id)


def test_book_carries_author_copies_and_queue(desk, author, make_book, now):
    book = make_book(copies=1, conditions=[CopyCondition.EXCELLENT])
    desk.borrow("amy", book.id, now=now)
    queued = desk.reserve("bob", book.id, now=now)

    fetched = desk.get_book(book.id)

    assert fetched.author.name == author.name
    assert [copy.condition for copy in fetched.copies] == [CopyCondition.EXCELLENT]
    assert [r.id for r in fetched.pending_reservations] == [queued.reservation.id]
    assert [b.author.email for b in desk.list_books()] == [author.email]
    assert book.author.id == author.id


def test_deleted_book_releases_its_isbn(desk, author, make_book):
    old = make_book()
    desk.delete_book(old.id)

    reissue = desk.register_book(title="Reissue", isbn=old.isbn, author_id=author.id)

    assert reissue.id != old.id
    assert desk.get_book(reissue.id).isbn == old.isbn
    with pytest.raises(NotFoundError):
        desk.get_book(old.id)
    with pytest.raises(ConflictError) as exc:
        desk.register_book(title="Third", isbn=old.isbn, author_id=author.id)
    assert exc.value.code == "IsbnTaken"


def test_update_may_take_a_deleted_books_isbn(desk, make_book):
    gone, kept = make_book(), make_book()
    desk.delete_book(gone.id)

    updated = desk.update_book(kept.id, isbn=gone.isbn)

    assert updated.isbn == gone.isbn
