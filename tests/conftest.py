import itertools
from datetime import datetime

import pytest

from circulation import CirculationDesk, CirculationPolicy
from circulation.db import init_db, make_engine, make_session_factory

NOW = datetime(2026, 3, 2, 10, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine(tmp_path, request):
    # one database file per test
    db_file = tmp_path / f"circulation_{request.node.name}.db"
    engine = make_engine(f"sqlite:///{db_file}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def desk(session_factory):
    return CirculationDesk(session_factory, policy=CirculationPolicy())


@pytest.fixture
def author(desk):
    return desk.create_author("Ursula K. Le Guin", "ursula@example.com")


@pytest.fixture
def make_book(desk, author):
    isbns = itertools.count(9780000000001)

    def _make(copies=1, conditions=None, title="The Dispossessed"):
        return desk.register_book(
            title=title,
            isbn=str(next(isbns)),
            author_id=author.id,
            publication_year=1974,
            copies=copies,
            conditions=conditions,
        )

    return _make


@pytest.fixture
def assert_consistent(desk):
    """available_copies == total_copies - open loans, for every book."""

    def _check():
        assert desk.reconcile() == []

    return _check
