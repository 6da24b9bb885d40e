from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from ..config import MatchSettings
from ..domain import (
    CancelReason,
    InvariantViolation,
    Outcome,
    PairStatus,
    PresenceState,
    Vote,
    VoteResult,
    VoteStatus,
)
from ..models import Pair, UserPresence
from .events import (
    OUTCOME_RESOLVED,
    PAIR_CANCELLED,
    VIDEO_SESSION_REQUESTED,
    VOTE_WINDOW_OPENED,
    log_match_event,
)
from .locks import UserLocks, acquire_with_retries, release_all
from .presence import get_presence
from .queue import requeue
from .state_machine import ACKNOWLEDGED, CANCEL, RESOLVE, next_pair_status, outcome_effects, resolve_outcome

logger = logging.getLogger(__name__)


def get_pair(db, pair_id: str, *, for_update: bool = False) -> Pair | None:
    stmt = select(Pair).where(Pair.id == pair_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalars().first()


def pair_presences(db, pair: Pair) -> dict[str, UserPresence]:
    out: dict[str, UserPresence] = {}
    for user_id in (pair.user1_id, pair.user2_id):
        presence = get_presence(db, user_id, for_update=True)
        if presence is None or presence.pair_id != pair.id or not presence.is_paired:
            raise InvariantViolation(
                f"pair {pair.id} is {pair.status.value} but user {user_id} does not reference it"
            )
        out[user_id] = presence
    return out


def apply_resolution(
    db,
    pair: Pair,
    outcome: Outcome,
    now: datetime,
    settings: MatchSettings,
    force_idle: Iterable[str] = (),
) -> None:
    """Close an active pair with ``outcome`` inside the caller's transaction."""
    presences = pair_presences(db, pair)
    votes = {pair.user1_id: pair.user1_vote, pair.user2_id: pair.user2_vote}
    effects = outcome_effects(outcome, votes, settings.fairness_boost)
    forced = set(force_idle)

    pair.status = next_pair_status(pair.status, RESOLVE)
    pair.outcome = outcome
    pair.vote_expires_at = None
    pair.resolved_at = now

    for user_id, presence in presences.items():
        effect = effects[user_id]
        if effect.state == PresenceState.WAITING and user_id not in forced:
            entry = requeue(db, presence, now, boost=effect.fairness_boost)
            next_state, fairness = PresenceState.WAITING, entry.fairness_score
        else:
            presence.enter_idle()
            next_state, fairness = PresenceState.IDLE, None
        log_match_event(
            db,
            user_id,
            OUTCOME_RESOLVED,
            pair_id=pair.id,
            payload={
                "outcome": outcome.value,
                "state": next_state.value,
                "fairness_boost": effect.fairness_boost if next_state == PresenceState.WAITING else 0,
                "fairness_score": fairness,
            },
            now=now,
        )

    if outcome == Outcome.MUTUAL_MATCH:
        log_match_event(
            db,
            pair.user1_id,
            VIDEO_SESSION_REQUESTED,
            pair_id=pair.id,
            payload={"participants": [pair.user1_id, pair.user2_id]},
            now=now,
        )
    logger.info("[VOTE] resolved pair_id=%s outcome=%s", pair.id, outcome.value)


def cancel_pair(
    db,
    pair: Pair,
    reason: CancelReason,
    now: datetime,
    requeue_users: Iterable[str],
) -> None:
    """Cancel a pending pair; listed users go back to the pool, the rest go idle."""
    presences = pair_presences(db, pair)
    back_to_pool = set(requeue_users)

    pair.status = next_pair_status(pair.status, CANCEL)
    pair.cancel_reason = reason
    pair.resolved_at = now

    for user_id, presence in presences.items():
        if user_id in back_to_pool:
            requeue(db, presence, now)
        else:
            presence.enter_idle()
        log_match_event(
            db,
            user_id,
            PAIR_CANCELLED,
            pair_id=pair.id,
            payload={"reason": reason.value, "state": presence.state.value},
            now=now,
        )
    logger.info("[VOTE] cancelled pair_id=%s reason=%s requeued=%s", pair.id, reason.value, sorted(back_to_pool))


def _pair_members(session_factory, pair_id: str, user_id: str) -> tuple[str, str] | None:
    with session_factory() as db:
        pair = get_pair(db, pair_id)
        if pair is None or not pair.has_member(user_id):
            return None
        return pair.user1_id, pair.user2_id


def _locked_pair_write(session_factory, locks: UserLocks, user_id: str, pair_id: str, settings: MatchSettings, write) -> VoteResult:
    members = _pair_members(session_factory, pair_id, user_id)
    if members is None:
        return VoteResult(status=VoteStatus.CONFLICT, pair_id=pair_id, detail="user is not part of this pair")

    for _ in range(max(1, settings.lock_retry_attempts)):
        held = acquire_with_retries(locks, members, settings.lock_retry_attempts, settings.lock_retry_delay_seconds)
        if held is None:
            return VoteResult(status=VoteStatus.BUSY, pair_id=pair_id, detail="pair is being updated, retry")
        try:
            with session_factory() as db:
                pair = get_pair(db, pair_id, for_update=True)
                result = write(db, pair)
                db.commit()
                return result
        except StaleDataError:
            # another writer bumped the pair version: re-read and re-validate
            logger.warning("[VOTE] stale pair version, retrying pair_id=%s user_id=%s", pair_id, user_id)
        finally:
            release_all(locks, held)
    return VoteResult(status=VoteStatus.BUSY, pair_id=pair_id, detail="pair is being updated, retry")


def acknowledge(session_factory, locks: UserLocks, user_id: str, pair_id: str, now: datetime, settings: MatchSettings) -> VoteResult:
    def write(db, pair: Pair) -> VoteResult:
        if pair.status == PairStatus.ACTIVE:
            return VoteResult(status=VoteStatus.RECORDED, pair_id=pair.id, pair_status=pair.status)
        if pair.status != PairStatus.PENDING:
            return VoteResult(
                status=VoteStatus.CONFLICT,
                pair_id=pair.id,
                pair_status=pair.status,
                outcome=pair.outcome,
                detail=f"pair is {pair.status.value}",
            )

        if user_id == pair.user1_id and pair.user1_acknowledged_at is None:
            pair.user1_acknowledged_at = now
        elif user_id == pair.user2_id and pair.user2_acknowledged_at is None:
            pair.user2_acknowledged_at = now

        if pair.user1_acknowledged_at is not None and pair.user2_acknowledged_at is not None:
            presences = pair_presences(db, pair)
            pair.status = next_pair_status(pair.status, ACKNOWLEDGED)
            pair.vote_expires_at = now + timedelta(seconds=settings.vote_window_seconds)
            for presence in presences.values():
                presence.enter_voting()
                log_match_event(
                    db,
                    presence.user_id,
                    VOTE_WINDOW_OPENED,
                    pair_id=pair.id,
                    payload={"vote_expires_at": pair.vote_expires_at.isoformat()},
                    now=now,
                )
            logger.info("[VOTE] window opened pair_id=%s expires_at=%s", pair.id, pair.vote_expires_at.isoformat())
        return VoteResult(status=VoteStatus.RECORDED, pair_id=pair.id, pair_status=pair.status)

    return _locked_pair_write(session_factory, locks, user_id, pair_id, settings, write)


def submit_vote(
    session_factory,
    locks: UserLocks,
    user_id: str,
    pair_id: str,
    choice: Vote | str,
    now: datetime,
    settings: MatchSettings,
) -> VoteResult:
    try:
        vote = Vote(choice)
    except ValueError:
        return VoteResult(status=VoteStatus.CONFLICT, pair_id=pair_id, detail=f"invalid vote {choice!r}")

    def write(db, pair: Pair) -> VoteResult:
        if pair.status == PairStatus.COMPLETED:
            return VoteResult(
                status=VoteStatus.WINDOW_EXPIRED,
                pair_id=pair.id,
                pair_status=pair.status,
                outcome=pair.outcome,
                detail="vote window closed",
            )
        if pair.status != PairStatus.ACTIVE:
            return VoteResult(
                status=VoteStatus.CONFLICT,
                pair_id=pair.id,
                pair_status=pair.status,
                detail=f"pair is {pair.status.value}, voting is not open",
            )
        if pair.vote_expires_at is None or now >= pair.vote_expires_at:
            return VoteResult(
                status=VoteStatus.WINDOW_EXPIRED,
                pair_id=pair.id,
                pair_status=pair.status,
                detail="vote window expired",
            )

        if user_id == pair.user1_id:
            pair.user1_vote = vote
        else:
            pair.user2_vote = vote

        outcome = resolve_outcome(pair.user1_vote, pair.user2_vote, window_closed=False)
        if outcome is None:
            logger.info("[VOTE] recorded pair_id=%s user_id=%s vote=%s awaiting partner", pair.id, user_id, vote.value)
            return VoteResult(status=VoteStatus.RECORDED, pair_id=pair.id, pair_status=pair.status, detail="awaiting partner")

        apply_resolution(db, pair, outcome, now, settings)
        return VoteResult(status=VoteStatus.RESOLVED, pair_id=pair.id, pair_status=pair.status, outcome=outcome)

    return _locked_pair_write(session_factory, locks, user_id, pair_id, settings, write)
