import pytest
from sqlalchemy import select, update

from conftest import NOW, at, paired_up, ready, voting_pair
from spinmatch.domain import CancelReason, Outcome, PairingStatus, PairStatus, PresenceState, Vote
from spinmatch.models import MatchEvent, Pair, QueueEntry
from spinmatch.services import resolver
from spinmatch.services.presence import get_presence


@pytest.fixture
def quiet(make_matchmaker):
    """Sweeps leave fairness scores alone."""
    return make_matchmaker(fairness_wait_credit=0)


def test_unreachable_owner_cancels_pending_pair_and_partner_keeps_fairness(matchmaker, session_factory):
    ready(matchmaker, "user-a", "user-b")
    matchmaker.request_pairing("user-a", now=NOW)
    with session_factory() as db:
        db.execute(update(QueueEntry).where(QueueEntry.user_id == "user-a").values(fairness_score=7))
        db.commit()
    pair_id = matchmaker.request_pairing("user-b", now=NOW).pair_id

    matchmaker.heartbeat("user-a", now=at(20))
    report = matchmaker.sweep(now=at(20), retry_matching=False)

    assert report.pairs_cancelled == 1
    with session_factory() as db:
        pair = db.get(Pair, pair_id)
        assert pair.status == PairStatus.CANCELLED
        assert pair.cancel_reason == CancelReason.PARTNER_UNREACHABLE
        assert get_presence(db, "user-a").state == PresenceState.WAITING
        assert db.get(QueueEntry, "user-a").fairness_score == 7
        assert get_presence(db, "user-b").state == PresenceState.IDLE
        assert db.get(QueueEntry, "user-b") is None


def test_stale_queue_entries_are_dropped(quiet, session_factory):
    ready(quiet, "user-a", "user-b")
    quiet.join("user-a", now=NOW)
    quiet.join("user-b", now=NOW)
    quiet.heartbeat("user-b", now=at(18))

    report = quiet.sweep(now=at(20), retry_matching=False)

    assert report.stale_dequeued == 1
    with session_factory() as db:
        assert get_presence(db, "user-a").state == PresenceState.IDLE
        assert db.get(QueueEntry, "user-a") is None
        assert db.get(QueueEntry, "user-b") is not None
        dropped = db.execute(select(MatchEvent).where(MatchEvent.event_type == "queue_dropped")).scalars().one()
        assert dropped.user_id == "user-a"


def test_expired_window_resolves_missing_votes_as_timeouts(matchmaker, session_factory):
    pair_id = voting_pair(matchmaker, "user-a", "user-b")
    matchmaker.submit_vote("user-a", pair_id, Vote.ACCEPT, now=at(5))

    assert matchmaker.sweep(now=at(19), retry_matching=False).votes_resolved == 0
    report = matchmaker.sweep(now=at(20), retry_matching=False)

    assert report.votes_resolved == 1
    with session_factory() as db:
        pair = db.get(Pair, pair_id)
        assert pair.outcome == Outcome.ACCEPT_TIMEOUT
        assert get_presence(db, "user-a").state == PresenceState.WAITING
        assert db.get(QueueEntry, "user-a").fairness_score == matchmaker.settings.fairness_boost
        assert get_presence(db, "user-b").state == PresenceState.IDLE


def test_double_timeout_sends_both_idle(quiet, session_factory):
    pair_id = voting_pair(quiet, "user-a", "user-b")
    quiet.sweep(now=at(25), retry_matching=False)
    with session_factory() as db:
        assert db.get(Pair, pair_id).outcome == Outcome.DOUBLE_TIMEOUT
        assert get_presence(db, "user-a").state == PresenceState.IDLE
        assert get_presence(db, "user-b").state == PresenceState.IDLE


def test_unacknowledged_pair_times_out(quiet, session_factory):
    pair_id = paired_up(quiet, "user-a", "user-b")
    quiet.acknowledge("user-a", pair_id, now=at(1))
    ready(quiet, "user-a", "user-b", now=at(29))

    assert quiet.sweep(now=at(29), retry_matching=False).pairs_cancelled == 0
    assert quiet.sweep(now=at(31), retry_matching=False).pairs_cancelled == 1

    with session_factory() as db:
        pair = db.get(Pair, pair_id)
        assert pair.cancel_reason == CancelReason.ACK_TIMEOUT
        assert get_presence(db, "user-a").state == PresenceState.WAITING
        assert get_presence(db, "user-b").state == PresenceState.IDLE


def test_waiting_users_earn_fairness_per_interval_waited(make_matchmaker, session_factory):
    matchmaker = make_matchmaker(fairness_wait_credit=2)
    ready(matchmaker, "user-a", "user-b")
    matchmaker.join("user-a", now=NOW)
    matchmaker.join("user-b", now=NOW)
    matchmaker.heartbeat("user-b", now=at(-30))

    report = matchmaker.sweep(now=at(12), retry_matching=False)

    assert report.stale_dequeued == 1
    assert report.entries_credited == 1
    with session_factory() as db:
        assert db.get(QueueEntry, "user-a").fairness_score == 4
        assert db.get(QueueEntry, "user-b") is None

    # extra sweeps inside the same interval add nothing
    assert matchmaker.sweep(now=at(13), retry_matching=False).entries_credited == 0
    assert matchmaker.sweep(now=at(14), retry_matching=False).entries_credited == 0
    with session_factory() as db:
        assert db.get(QueueEntry, "user-a").fairness_score == 4


def test_aging_skips_locked_users(matchmaker, locks, session_factory):
    ready(matchmaker, "user-a")
    matchmaker.join("user-a", now=NOW)
    matchmaker.heartbeat("user-a", now=at(30))

    assert locks.try_acquire("user-a")
    try:
        report = matchmaker.sweep(now=at(31), retry_matching=False)
    finally:
        locks.release("user-a")

    assert report.entries_credited == 0
    assert report.entries_relaxed == 0
    with session_factory() as db:
        entry = db.get(QueueEntry, "user-a")
        assert entry.fairness_score == 0
        assert entry.relaxation_stage == 0

    report = matchmaker.sweep(now=at(31), retry_matching=False)
    assert report.entries_credited == 1
    assert report.entries_relaxed == 1
    with session_factory() as db:
        entry = db.get(QueueEntry, "user-a")
        assert entry.fairness_score == 6
        assert entry.relaxation_stage == 1


def test_sweep_skips_locked_users(quiet, locks, session_factory):
    ready(quiet, "user-a")
    quiet.join("user-a", now=NOW)
    assert locks.try_acquire("user-a")
    try:
        report = quiet.sweep(now=at(30), retry_matching=False)
    finally:
        locks.release("user-a")
    assert report.stale_dequeued == 0
    assert quiet.sweep(now=at(30), retry_matching=False).stale_dequeued == 1


def test_sweep_logs_failed_items_and_keeps_going(quiet, session_factory, monkeypatch):
    ready(quiet, "user-a", "user-b")
    quiet.join("user-a", now=NOW)
    quiet.join("user-b", now=NOW)
    real = resolver._drop_stale_entry

    def flaky(session_factory, locks, user_id, now, settings):
        if user_id == "user-a":
            raise RuntimeError("boom")
        return real(session_factory, locks, user_id, now, settings)

    monkeypatch.setattr(resolver, "_drop_stale_entry", flaky)
    report = quiet.sweep(now=at(30), retry_matching=False)

    assert report.failures == 1
    assert report.stale_dequeued == 1
    assert report.errors[0]["check"] == "stale_entry"
    assert report.errors[0]["key"] == "user-a"


def test_disconnect_while_waiting(matchmaker, session_factory):
    ready(matchmaker, "user-a")
    matchmaker.join("user-a", now=NOW)
    out = matchmaker.disconnect("user-a", now=at(1))
    assert out["state"] == "idle"
    with session_factory() as db:
        assert db.get(QueueEntry, "user-a") is None


def test_disconnect_cancels_pending_pair_and_requeues_partner(matchmaker, session_factory):
    pair_id = paired_up(matchmaker, "user-a", "user-b")
    out = matchmaker.disconnect("user-b", now=at(1))
    assert out["pair_status"] == "cancelled"
    with session_factory() as db:
        assert db.get(Pair, pair_id).cancel_reason == CancelReason.DISCONNECTED
        assert get_presence(db, "user-a").state == PresenceState.WAITING
        assert get_presence(db, "user-b").state == PresenceState.IDLE


def test_disconnect_during_vote_counts_as_timeout(matchmaker, session_factory):
    pair_id = voting_pair(matchmaker, "user-a", "user-b")
    matchmaker.submit_vote("user-a", pair_id, Vote.ACCEPT, now=at(2))

    out = matchmaker.disconnect("user-b", now=at(3))

    assert out["pair_status"] == "completed"
    with session_factory() as db:
        assert db.get(Pair, pair_id).outcome == Outcome.ACCEPT_TIMEOUT
        assert get_presence(db, "user-a").state == PresenceState.WAITING
        assert get_presence(db, "user-b").state == PresenceState.IDLE


def test_disconnect_after_own_accept_still_goes_idle(matchmaker, session_factory):
    pair_id = voting_pair(matchmaker, "user-a", "user-b")
    matchmaker.submit_vote("user-a", pair_id, Vote.ACCEPT, now=at(2))

    matchmaker.disconnect("user-a", now=at(3))

    with session_factory() as db:
        assert get_presence(db, "user-a").state == PresenceState.IDLE
        assert db.get(QueueEntry, "user-a") is None
        assert get_presence(db, "user-b").state == PresenceState.IDLE


def test_disconnect_out_of_a_pair_starts_a_cooldown(matchmaker, session_factory):
    paired_up(matchmaker, "user-a", "user-b")
    matchmaker.disconnect("user-b", now=at(1))

    result = matchmaker.request_pairing("user-b", now=at(2))
    assert result.status == PairingStatus.CONFLICT
    assert "cooldown" in result.detail
    assert matchmaker.get_status("user-b", now=at(2))["cooldown_until"] == at(301).isoformat()
    with session_factory() as db:
        assert get_presence(db, "user-b").state == PresenceState.IDLE
        assert db.get(QueueEntry, "user-b") is None
        started = db.execute(select(MatchEvent).where(MatchEvent.event_type == "cooldown_started")).scalars().one()
        assert started.user_id == "user-b"

    result = matchmaker.request_pairing("user-b", now=at(301))
    assert result.status != PairingStatus.CONFLICT
    with session_factory() as db:
        assert get_presence(db, "user-b").state == PresenceState.WAITING
        assert get_presence(db, "user-a").cooldown_until is None


def test_disconnect_while_waiting_has_no_cooldown(matchmaker):
    ready(matchmaker, "user-a")
    matchmaker.join("user-a", now=NOW)
    matchmaker.disconnect("user-a", now=at(1))

    assert matchmaker.request_pairing("user-a", now=at(2)).status == PairingStatus.NO_PAIR_FOUND
