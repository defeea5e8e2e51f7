import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class BookLocks:
    """
    Per-book exclusion for read-modify-write sequences (counter, queue head).
    Acquire before opening the transaction so the commit happens inside it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def _lock_for(self, book_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(book_id)
            if lock is None:
                lock = self._locks[book_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, book_id: int) -> Iterator[None]:
        with self._lock_for(book_id):
            yield
