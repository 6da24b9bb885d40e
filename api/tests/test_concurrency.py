import threading

from sqlalchemy import select

from conftest import NOW, ready
from spinmatch.domain import PairStatus, PresenceState
from spinmatch.models import Pair, QueueEntry, UserPresence


def _join_all(matchmaker, user_ids):
    barrier = threading.Barrier(len(user_ids))
    errors = []

    def worker(user_id):
        try:
            barrier.wait()
            matchmaker.request_pairing(user_id, now=NOW)
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(u,)) for u in user_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    assert errors == []
    # settle anything left contended, the way the periodic sweep would
    matchmaker.sweep(now=NOW)


def _assert_no_duplicates(session_factory, expected_pairs, expected_users):
    with session_factory() as db:
        pairs = db.execute(select(Pair)).scalars().all()
        assert len(pairs) == expected_pairs
        members = [u for p in pairs for u in (p.user1_id, p.user2_id)]
        assert len(members) == len(set(members))
        assert set(members) == set(expected_users)
        assert all(p.status == PairStatus.PENDING for p in pairs)
        assert db.execute(select(QueueEntry)).scalars().all() == []
        by_user = {p.user_id: p for p in db.execute(select(UserPresence)).scalars().all()}
        for pair in pairs:
            a, b = by_user[pair.user1_id], by_user[pair.user2_id]
            assert a.state == b.state == PresenceState.MATCHED
            assert (a.partner_id, b.partner_id) == (pair.user2_id, pair.user1_id)
            assert a.pair_id == b.pair_id == pair.id


def test_two_simultaneous_joins_create_exactly_one_pair(matchmaker, session_factory):
    ready(matchmaker, "user-a", "user-b")
    _join_all(matchmaker, ["user-a", "user-b"])
    _assert_no_duplicates(session_factory, 1, ["user-a", "user-b"])


def test_twenty_simultaneous_joins_create_ten_pairs(matchmaker, session_factory):
    users = []
    for i in range(10):
        age = 30 + i
        pair_users = [f"user-{i:02d}-a", f"user-{i:02d}-b"]
        ready(matchmaker, *pair_users, age=age, min_age=age, max_age=age)
        users.extend(pair_users)

    _join_all(matchmaker, users)

    _assert_no_duplicates(session_factory, 10, users)


def test_concurrent_votes_resolve_once(matchmaker, session_factory):
    ready(matchmaker, "user-a", "user-b")
    matchmaker.request_pairing("user-a", now=NOW)
    pair_id = matchmaker.request_pairing("user-b", now=NOW).pair_id
    matchmaker.acknowledge("user-a", pair_id, now=NOW)
    matchmaker.acknowledge("user-b", pair_id, now=NOW)

    barrier = threading.Barrier(2)
    results = {}

    def vote(user_id):
        barrier.wait()
        results[user_id] = matchmaker.submit_vote(user_id, pair_id, "accept", now=NOW)

    threads = [threading.Thread(target=vote, args=(u,)) for u in ("user-a", "user-b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    statuses = sorted(r.status.value for r in results.values())
    assert statuses == ["recorded", "resolved"]
    with session_factory() as db:
        assert db.get(Pair, pair_id).status == PairStatus.COMPLETED
