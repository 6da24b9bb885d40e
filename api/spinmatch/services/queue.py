from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from ..config import MatchSettings
from ..domain import InvariantViolation, PresenceState
from ..models import QueueEntry, UserPresence
from .events import QUEUE_JOINED, log_match_event
from .presence import get_or_create_presence, reachable_cutoff, touch


class QueueConflict(Exception):
    def __init__(self, user_id: str, state: PresenceState, message: str | None = None):
        super().__init__(message or f"user {user_id} is {state.value} and cannot join the queue")
        self.user_id = user_id
        self.state = state


class InCooldown(QueueConflict):
    def __init__(self, user_id: str, state: PresenceState, cooldown_until: datetime):
        super().__init__(user_id, state, f"user {user_id} is in cooldown until {cooldown_until.isoformat()}")
        self.cooldown_until = cooldown_until


@dataclass(frozen=True)
class QueueSlot:
    user_id: str
    fairness_score: int
    enqueued_at: datetime
    relaxation_stage: int


def get_entry(db, user_id: str, *, for_update: bool = False) -> QueueEntry | None:
    stmt = select(QueueEntry).where(QueueEntry.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalars().first()


def enqueue(db, user_id: str, now: datetime, settings: MatchSettings) -> QueueEntry:
    """Put a user into the waiting pool; the caller holds the user's lock.

    An existing entry keeps its enqueue time, fairness and relaxation stage.
    A fresh entry starts from the fairness carried over in this seeking session.
    """
    presence = get_or_create_presence(db, user_id, for_update=True)
    if presence.is_paired:
        raise QueueConflict(user_id, presence.state)
    if presence.in_cooldown(now):
        raise InCooldown(user_id, presence.state, presence.cooldown_until)

    touch(presence, now, settings)
    entry = get_entry(db, user_id, for_update=True)
    if entry is None:
        entry = QueueEntry(
            user_id=user_id,
            fairness_score=presence.carried_fairness or 0,
            enqueued_at=now,
            credited_at=now,
            relaxation_stage=0,
        )
        db.add(entry)
        log_match_event(db, user_id, QUEUE_JOINED, payload={"fairness_score": entry.fairness_score}, now=now)
    presence.enter_waiting()
    return entry


def requeue(db, presence: UserPresence, now: datetime, boost: int = 0) -> QueueEntry:
    """Return a user to the pool after a pair unwinds, keeping their fairness."""
    if boost < 0:
        raise InvariantViolation("fairness boost must not be negative")
    entry = get_entry(db, presence.user_id, for_update=True)
    if entry is None:
        entry = QueueEntry(
            user_id=presence.user_id,
            fairness_score=(presence.carried_fairness or 0) + boost,
            enqueued_at=now,
            credited_at=now,
            relaxation_stage=0,
        )
        db.add(entry)
    else:
        entry.fairness_score += boost
    presence.enter_waiting()
    return entry


def dequeue(db, user_id: str, presence: UserPresence | None = None) -> int | None:
    entry = get_entry(db, user_id, for_update=True)
    if entry is None:
        return None
    fairness = entry.fairness_score
    if presence is not None:
        presence.carried_fairness = fairness
    db.delete(entry)
    return fairness


def snapshot(
    db,
    now: datetime,
    settings: MatchSettings,
    excluding: str | None = None,
    limit: int | None = None,
) -> list[QueueSlot]:
    stmt = (
        select(QueueEntry)
        .join(UserPresence, UserPresence.user_id == QueueEntry.user_id)
        .where(
            UserPresence.state == PresenceState.WAITING,
            UserPresence.reachable_until > reachable_cutoff(now, settings),
        )
        .order_by(QueueEntry.fairness_score.desc(), QueueEntry.enqueued_at.asc(), QueueEntry.user_id.asc())
        .execution_options(populate_existing=True)
    )
    if excluding is not None:
        stmt = stmt.where(QueueEntry.user_id != excluding)
    if limit is not None:
        stmt = stmt.limit(limit)
    return [
        QueueSlot(
            user_id=e.user_id,
            fairness_score=e.fairness_score,
            enqueued_at=e.enqueued_at,
            relaxation_stage=e.relaxation_stage,
        )
        for e in db.execute(stmt).scalars().all()
    ]
