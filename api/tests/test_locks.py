import pytest

from spinmatch.services.locks import (
    InMemoryUserLocks,
    PgAdvisoryUserLocks,
    acquire_all,
    acquire_with_retries,
    build_user_locks,
    extend_in_order,
    locked,
    release_all,
)


def test_acquire_all_is_all_or_nothing():
    locks = InMemoryUserLocks()
    assert locks.try_acquire("b")
    assert acquire_all(locks, ["c", "a", "b"]) is None
    assert not locks.is_locked("a")
    assert not locks.is_locked("c")
    locks.release("b")
    assert acquire_all(locks, ["c", "a", "b"]) == ["a", "b", "c"]


def test_extend_in_order_appends_when_extra_sorts_last():
    locks = InMemoryUserLocks()
    held = acquire_all(locks, ["a"])
    held, got = extend_in_order(locks, held, "b")
    assert got and held == ["a", "b"]


def test_extend_in_order_retakes_in_order_when_extra_sorts_first():
    locks = InMemoryUserLocks()
    held = acquire_all(locks, ["m"])
    held, got = extend_in_order(locks, held, "a")
    assert got and held == ["a", "m"]
    release_all(locks, held)


def test_extend_in_order_keeps_original_set_when_extra_is_taken():
    locks = InMemoryUserLocks()
    held = acquire_all(locks, ["m"])
    assert locks.try_acquire("a")
    held, got = extend_in_order(locks, held, "a")
    assert not got
    assert held == ["m"]
    assert locks.is_locked("m")


def test_acquire_with_retries_gives_up():
    locks = InMemoryUserLocks()
    locks.try_acquire("a")
    assert acquire_with_retries(locks, ["a", "b"], attempts=3, delay_seconds=0) is None
    assert not locks.is_locked("b")


def test_locked_context_releases():
    locks = InMemoryUserLocks()
    with locked(locks, ["x", "y"]) as ok:
        assert ok
        assert locks.is_locked("x")
    assert not locks.is_locked("x")
    assert not locks.is_locked("y")


class FakeResult:
    def __init__(self, value):
        self.value = value

    def scalar(self):
        return self.value


class FakeConn:
    def __init__(self, engine):
        self.engine = engine
        self.closed = False

    def execute(self, stmt, params):
        self.engine.calls.append((str(stmt), params))
        if "pg_try_advisory_lock" in str(stmt):
            key = params["key"]
            if key in self.engine.taken:
                return FakeResult(False)
            self.engine.taken.add(key)
            return FakeResult(True)
        self.engine.taken.discard(params["key"])
        return FakeResult(True)

    def close(self):
        self.closed = True


class FakeEngine:
    def __init__(self):
        self.calls = []
        self.taken = set()
        self.conns = []

    def connect(self):
        conn = FakeConn(self)
        self.conns.append(conn)
        return conn


def test_pg_advisory_locks_hold_a_connection_until_release():
    engine = FakeEngine()
    locks = PgAdvisoryUserLocks(engine, namespace="test")

    assert locks.try_acquire("user-a")
    assert not locks.try_acquire("user-a")
    assert engine.conns[0].closed is False
    assert engine.conns[1].closed is True

    locks.release("user-a")
    assert engine.conns[0].closed is True
    sql, params = engine.calls[-1]
    assert "pg_advisory_unlock(hashtext(:key))" in sql
    assert params == {"key": "test:user-a"}
    assert locks.try_acquire("user-a")


def test_build_user_locks():
    assert isinstance(build_user_locks("memory"), InMemoryUserLocks)
    assert isinstance(build_user_locks("postgres", FakeEngine()), PgAdvisoryUserLocks)
    with pytest.raises(ValueError):
        build_user_locks("postgres")
    with pytest.raises(ValueError):
        build_user_locks("redis")
