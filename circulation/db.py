import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from circulation import models
from circulation.config import settings


def make_engine(database_url: str, echo: bool = False) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.database_url, echo=settings.database_echo)
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine) -> None:
    # SQLite file databases need their directory to exist first
    url = bind.url
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        db_dir = os.path.dirname(url.database)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
    models.Base.metadata.create_all(bind=bind)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    One unit of work: commit when the block finishes, roll back and
    re-raise on any exception (domain faults and database errors alike).
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
