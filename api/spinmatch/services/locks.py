"""Per-user non-blocking mutual exclusion.

Every acquisition is a try-lock. Whenever more than one user is locked the ids
are taken in sorted order, so a blocking back-end can never deadlock either.
"""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterable, Iterator

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


class UserLocks:
    def try_acquire(self, user_id: str) -> bool:
        raise NotImplementedError

    def release(self, user_id: str) -> None:
        raise NotImplementedError


class InMemoryUserLocks(UserLocks):
    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def try_acquire(self, user_id: str) -> bool:
        return self._lock_for(user_id).acquire(blocking=False)

    def release(self, user_id: str) -> None:
        self._lock_for(user_id).release()

    def is_locked(self, user_id: str) -> bool:
        return self._lock_for(user_id).locked()


class PgAdvisoryUserLocks(UserLocks):
    """Session-level advisory locks, shared by every process on the database.

    Each held lock pins its own pooled connection until release, because the
    advisory lock belongs to the database session that took it.
    """

    def __init__(self, engine: Engine, namespace: str = "spinmatch") -> None:
        self._engine = engine
        self._namespace = namespace
        self._held: dict[str, object] = {}
        self._guard = threading.Lock()

    def _key(self, user_id: str) -> str:
        return f"{self._namespace}:{user_id}"

    def try_acquire(self, user_id: str) -> bool:
        conn = self._engine.connect()
        try:
            acquired = bool(
                conn.execute(text("SELECT pg_try_advisory_lock(hashtext(:key))"), {"key": self._key(user_id)}).scalar()
            )
        except Exception:
            conn.close()
            raise
        if not acquired:
            conn.close()
            return False
        with self._guard:
            self._held[user_id] = conn
        return True

    def release(self, user_id: str) -> None:
        with self._guard:
            conn = self._held.pop(user_id, None)
        if conn is None:
            logger.warning("[LOCKS] release of advisory lock not held user_id=%s", user_id)
            return
        try:
            conn.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": self._key(user_id)})
        finally:
            conn.close()


def acquire_all(locks: UserLocks, user_ids: Iterable[str]) -> list[str] | None:
    """Try-lock every id in canonical order; all or nothing."""
    acquired: list[str] = []
    for user_id in sorted(set(user_ids)):
        if not locks.try_acquire(user_id):
            release_all(locks, acquired)
            return None
        acquired.append(user_id)
    return acquired


def release_all(locks: UserLocks, user_ids: Iterable[str]) -> None:
    for user_id in sorted(set(user_ids), reverse=True):
        locks.release(user_id)


def extend_in_order(locks: UserLocks, held: list[str], extra: str) -> tuple[list[str], bool]:
    """Add ``extra`` to an already held set without breaking lock order.

    Returns the ids now held and whether ``extra`` is among them. When ``extra``
    sorts before a held id the held locks are dropped and the whole set is
    re-taken in order; if that fails the original set is re-taken on its own,
    which itself may fail if another worker slipped in.
    """
    if not held or extra > max(held):
        if locks.try_acquire(extra):
            return sorted(held + [extra]), True
        return held, False

    release_all(locks, held)
    acquired = acquire_all(locks, held + [extra])
    if acquired is not None:
        return acquired, True
    return acquire_all(locks, held) or [], False


def acquire_with_retries(locks: UserLocks, user_ids: Iterable[str], attempts: int, delay_seconds: float) -> list[str] | None:
    ids = list(user_ids)
    for attempt in range(max(1, attempts)):
        acquired = acquire_all(locks, ids)
        if acquired is not None:
            return acquired
        if attempt + 1 < attempts:
            time.sleep(delay_seconds)
    return None


@contextmanager
def locked(locks: UserLocks, user_ids: Iterable[str]) -> Iterator[bool]:
    acquired = acquire_all(locks, user_ids)
    try:
        yield acquired is not None
    finally:
        if acquired:
            release_all(locks, acquired)


def build_user_locks(backend: str, engine: Engine | None = None) -> UserLocks:
    if backend == "postgres":
        if engine is None:
            raise ValueError("postgres advisory locks need an engine")
        return PgAdvisoryUserLocks(engine)
    if backend != "memory":
        raise ValueError(f"unknown lock backend {backend!r}")
    return InMemoryUserLocks()


class LockBusy(Exception):
    def __init__(self, user_ids: Iterable[str]):
        self.user_ids = sorted(set(user_ids))
        super().__init__(f"users {self.user_ids} are locked by another worker")
