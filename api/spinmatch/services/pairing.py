from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import or_, select

from ..config import MatchSettings
from ..domain import (
    OPEN_PAIR_STATUSES,
    InvariantViolation,
    PairingResult,
    PairStatus,
    PresenceState,
    canonical_pair,
)
from ..models import Pair, PairHistory, QueueEntry, UserPresence
from .compatibility import matching_stage
from .events import PAIRED, log_match_event
from .locks import UserLocks, extend_in_order, release_all
from .preferences import get_criteria, get_criteria_many, has_ever_paired, paired_partners
from .presence import get_presence, is_reachable_row
from .queue import dequeue, get_entry, snapshot

logger = logging.getLogger(__name__)

CONTENDED = "contended"


def _waiting_and_reachable(
    db, user_id: str, now: datetime, settings: MatchSettings
) -> tuple[UserPresence, QueueEntry] | None:
    presence = get_presence(db, user_id, for_update=True)
    if presence is None or presence.state != PresenceState.WAITING:
        return None
    if not is_reachable_row(presence, now, settings):
        return None
    entry = get_entry(db, user_id, for_update=True)
    if entry is None:
        return None
    return presence, entry


def _assert_no_open_pair(db, user_ids: tuple[str, str]) -> None:
    open_pair = db.execute(
        select(Pair.id)
        .where(
            Pair.status.in_(list(OPEN_PAIR_STATUSES)),
            or_(Pair.user1_id.in_(user_ids), Pair.user2_id.in_(user_ids)),
        )
        .limit(1)
    ).first()
    if open_pair is not None:
        raise InvariantViolation(f"waiting users {user_ids} already referenced by open pair {open_pair[0]}")


def create_pair(
    db,
    user_presence: UserPresence,
    partner_presence: UserPresence,
    now: datetime,
    stage: int,
) -> Pair:
    """The only constructor of Pair rows; runs inside the caller's transaction."""
    user1_id, user2_id = canonical_pair(user_presence.user_id, partner_presence.user_id)
    _assert_no_open_pair(db, (user1_id, user2_id))

    pair = Pair(id=str(uuid.uuid4()), user1_id=user1_id, user2_id=user2_id, status=PairStatus.PENDING, created_at=now)
    db.add(pair)

    for presence, partner in ((user_presence, partner_presence), (partner_presence, user_presence)):
        dequeue(db, presence.user_id, presence=presence)
        presence.enter_matched(partner.user_id, pair.id)

    db.add(PairHistory(user1_id=user1_id, user2_id=user2_id, pair_id=pair.id, created_at=now))
    for user_id in (user1_id, user2_id):
        log_match_event(
            db,
            user_id,
            PAIRED,
            pair_id=pair.id,
            payload={"partner_id": pair.partner_of(user_id), "stage": stage},
            now=now,
        )
    return pair


def attempt_pair(session_factory, locks: UserLocks, user_id: str, now: datetime, settings: MatchSettings) -> PairingResult:
    if not locks.try_acquire(user_id):
        return PairingResult.no_pair(CONTENDED)
    held = [user_id]
    contended = False
    try:
        with session_factory() as db:
            me = _waiting_and_reachable(db, user_id, now, settings)
            if me is None:
                return PairingResult.no_pair("not_waiting")
            _, my_entry = me
            my_criteria = get_criteria(db, user_id)
            history = paired_partners(db, user_id)

            slots = snapshot(db, now, settings, excluding=user_id)
            criteria = get_criteria_many(db, [s.user_id for s in slots])
            for slot in slots:
                stage = matching_stage(
                    my_criteria,
                    criteria[slot.user_id],
                    my_entry.relaxation_stage,
                    slot.relaxation_stage,
                    ever_paired=slot.user_id in history,
                )
                if stage is None:
                    continue

                held, got_candidate = extend_in_order(locks, held, slot.user_id)
                if user_id not in held:
                    logger.info("[PAIRING] lost own lock while ordering user_id=%s candidate=%s", user_id, slot.user_id)
                    return PairingResult.no_pair(CONTENDED)
                if not got_candidate:
                    contended = True
                    continue

                # the snapshot may be stale: both sides re-checked under lock
                mine = _waiting_and_reachable(db, user_id, now, settings)
                theirs = _waiting_and_reachable(db, slot.user_id, now, settings)
                if mine is None:
                    return PairingResult.no_pair("not_waiting")
                if theirs is None or has_ever_paired(db, user_id, slot.user_id):
                    logger.debug("[PAIRING] candidate went stale user_id=%s candidate=%s", user_id, slot.user_id)
                    locks.release(slot.user_id)
                    held.remove(slot.user_id)
                    continue

                pair = create_pair(db, mine[0], theirs[0], now, stage)
                db.commit()
                logger.info(
                    "[PAIRING] paired pair_id=%s user_id=%s partner_id=%s stage=%s",
                    pair.id,
                    user_id,
                    slot.user_id,
                    stage,
                )
                return PairingResult.paired(pair.id, slot.user_id)

            return PairingResult.no_pair(CONTENDED if contended else "no_candidate")
    finally:
        release_all(locks, held)
