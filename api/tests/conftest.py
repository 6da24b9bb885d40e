import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")

from spinmatch.config import MatchSettings
from spinmatch.database import Base, make_engine, make_session_factory
from spinmatch.services.locks import InMemoryUserLocks
from spinmatch.services.matchmaking import Matchmaker

NOW = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)

TEST_SETTINGS = MatchSettings(
    heartbeat_ttl_seconds=10,
    reachability_grace_seconds=5,
    vote_window_seconds=20,
    ack_timeout_seconds=30,
    fairness_boost=10,
    fairness_wait_credit=1,
    fairness_credit_interval_seconds=5,
    relaxation_step_seconds=30,
    max_relaxation_stage=1,
    sweep_interval_seconds=5,
    cooldown_seconds=300,
    lock_retry_attempts=50,
    lock_retry_delay_seconds=0.01,
)


def at(seconds: float) -> datetime:
    return NOW + timedelta(seconds=seconds)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'spinmatch.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def locks():
    return InMemoryUserLocks()


@pytest.fixture
def make_matchmaker(session_factory, locks):
    def _make(**overrides) -> Matchmaker:
        return Matchmaker(session_factory, locks, replace(TEST_SETTINGS, **overrides), clock=lambda: NOW)

    return _make


@pytest.fixture
def matchmaker(make_matchmaker):
    return make_matchmaker()


def ready(matchmaker: Matchmaker, *user_ids: str, now: datetime = NOW, **prefs) -> None:
    """Give users a profile and a fresh heartbeat."""
    for user_id in user_ids:
        if prefs:
            matchmaker.set_preferences(user_id, **prefs)
        matchmaker.heartbeat(user_id, now=now)


def paired_up(matchmaker: Matchmaker, user_a: str, user_b: str, now: datetime = NOW) -> str:
    ready(matchmaker, user_a, user_b, now=now)
    matchmaker.request_pairing(user_a, now=now)
    result = matchmaker.request_pairing(user_b, now=now)
    assert result.pair_id is not None, result
    return result.pair_id


def voting_pair(matchmaker: Matchmaker, user_a: str, user_b: str, now: datetime = NOW) -> str:
    pair_id = paired_up(matchmaker, user_a, user_b, now=now)
    matchmaker.acknowledge(user_a, pair_id, now=now)
    matchmaker.acknowledge(user_b, pair_id, now=now)
    return pair_id
