# Overview: Locking and retry helpers shared by the ledger and the sync queue.

from __future__ import annotations

import threading
import time
from collections import defaultdict
from contextlib import contextmanager

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class KeyedLock:
    """
    Process-level mutual exclusion per key.

    SQLite ignores SELECT ... FOR UPDATE, so the read-current/compute-new/
    write-new sequence of the ledger is serialized here instead. Locks are
    reentrant so a service may call another service for the same product.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = defaultdict(threading.RLock)

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            return self._locks[key]

    @contextmanager
    def hold(self, key: str):
        lock = self.get(key)
        with lock:
            yield

    def rename(self, old_key: str, new_key: str) -> None:
        """Carry a lock over when a temporary id becomes permanent."""
        with self._guard:
            if old_key in self._locks and new_key not in self._locks:
                self._locks[new_key] = self._locks.pop(old_key)


_product_locks = KeyedLock()


def product_lock(product_id: str):
    """Exclusive scope for the read-modify-write of one product's quantity."""
    return _product_locks.hold(product_id)


def rename_product_lock(old_id: str, new_id: str) -> None:
    _product_locks.rename(old_id, new_id)


class SequenceAllocator:
    """
    Monotonic local insertion order for movements.

    Each allocation takes the larger of the last value handed out and the
    current maximum in the database, so it stays monotonic across restarts
    and after the cache is replaced from the remote store.
    """

    def __init__(self, column) -> None:
        self._column = column
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            current_max = db.session.query(func.coalesce(func.max(self._column), 0)).scalar() or 0
            value = max(int(current_max), self._last) + 1
            self._last = value
            return value


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (SQLite "database is locked") and
    StaleDataError (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
