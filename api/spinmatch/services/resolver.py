"""Periodic sweep that forces the transitions no client call will make.

Every item runs in its own transaction under the same per-user try-locks the
request paths use. A user that is locked right now is left for the next
sweep, and a failing item is logged and skipped.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import or_, select

from ..config import MatchSettings
from ..domain import CancelReason, PairingStatus, PairStatus, PresenceState, SweepReport
from ..models import Pair, QueueEntry, UserPresence
from .events import COOLDOWN_STARTED, QUEUE_DROPPED, QUEUE_LEFT, log_match_event
from .locks import LockBusy, UserLocks, acquire_with_retries, locked, release_all
from .pairing import attempt_pair
from .presence import get_presence, is_reachable_row, reachable_cutoff
from .queue import QueueConflict, dequeue, get_entry, snapshot
from .voting import apply_resolution, cancel_pair, get_pair
from .state_machine import resolve_outcome

logger = logging.getLogger(__name__)


def _run_item(report: SweepReport, check: str, key: str, fn: Callable[[], Any]) -> Any:
    try:
        return fn()
    except Exception as exc:
        logger.exception("[SWEEP] %s failed for %s", check, key)
        report.failures += 1
        report.errors.append({"check": check, "key": key, "error": str(exc)})
        return False


def _drop_stale_entry(session_factory, locks: UserLocks, user_id: str, now: datetime, settings: MatchSettings) -> bool:
    if not locks.try_acquire(user_id):
        return False
    try:
        with session_factory() as db:
            presence = get_presence(db, user_id, for_update=True)
            if presence is not None and presence.state == PresenceState.WAITING and is_reachable_row(presence, now, settings):
                return False
            if dequeue(db, user_id) is None:
                return False
            if presence is not None and not presence.is_paired:
                presence.enter_idle()
            log_match_event(db, user_id, QUEUE_DROPPED, payload={"reason": "unreachable"}, now=now)
            db.commit()
            return True
    finally:
        locks.release(user_id)


def _resolve_expired(session_factory, locks: UserLocks, pair_id: str, members: tuple[str, str], now: datetime, settings: MatchSettings) -> bool:
    with locked(locks, members) as ok:
        if not ok:
            return False
        with session_factory() as db:
            pair = get_pair(db, pair_id, for_update=True)
            if pair is None or pair.status != PairStatus.ACTIVE or pair.vote_expires_at > now:
                return False
            outcome = resolve_outcome(pair.user1_vote, pair.user2_vote, window_closed=True)
            apply_resolution(db, pair, outcome, now, settings)
            db.commit()
            return True


def _unwind_pending(session_factory, locks: UserLocks, pair_id: str, members: tuple[str, str], now: datetime, settings: MatchSettings) -> bool:
    with locked(locks, members) as ok:
        if not ok:
            return False
        with session_factory() as db:
            pair = get_pair(db, pair_id, for_update=True)
            if pair is None or pair.status != PairStatus.PENDING:
                return False
            reachable = {
                user_id
                for user_id in members
                if is_reachable_row(get_presence(db, user_id), now, settings)
            }
            if len(reachable) < 2:
                cancel_pair(db, pair, CancelReason.PARTNER_UNREACHABLE, now, requeue_users=reachable)
            elif pair.created_at <= now - timedelta(seconds=settings.ack_timeout_seconds):
                acknowledged = {user_id for user_id in members if pair.acknowledged_at(user_id) is not None}
                cancel_pair(db, pair, CancelReason.ACK_TIMEOUT, now, requeue_users=acknowledged)
            else:
                return False
            db.commit()
            return True


def credit_wait(entry: QueueEntry, now: datetime, settings: MatchSettings) -> bool:
    """Add the wait credit once per full interval waited since the last credit."""
    interval = settings.fairness_credit_interval_seconds
    if settings.fairness_wait_credit <= 0 or interval <= 0:
        return False
    units = int((now - entry.credited_at).total_seconds() // interval)
    if units <= 0:
        return False
    entry.fairness_score += units * settings.fairness_wait_credit
    entry.credited_at = entry.credited_at + timedelta(seconds=units * interval)
    return True


def relax(entry: QueueEntry, now: datetime, settings: MatchSettings) -> bool:
    if settings.relaxation_step_seconds <= 0:
        return False
    waited = (now - entry.enqueued_at).total_seconds()
    target = min(settings.max_relaxation_stage, int(waited // settings.relaxation_step_seconds))
    if target <= entry.relaxation_stage:
        return False
    entry.relaxation_stage = target
    return True


def _age_entry(session_factory, locks: UserLocks, user_id: str, now: datetime, settings: MatchSettings) -> tuple[bool, bool]:
    if not locks.try_acquire(user_id):
        return False, False
    try:
        with session_factory() as db:
            presence = get_presence(db, user_id, for_update=True)
            if presence is None or presence.state != PresenceState.WAITING or not is_reachable_row(presence, now, settings):
                return False, False
            entry = get_entry(db, user_id, for_update=True)
            if entry is None:
                return False, False
            credited = credit_wait(entry, now, settings)
            relaxed = relax(entry, now, settings)
            if credited or relaxed:
                db.commit()
            return credited, relaxed
    finally:
        locks.release(user_id)


def run_sweep(
    session_factory,
    locks: UserLocks,
    now: datetime,
    settings: MatchSettings,
    retry_matching: bool = True,
) -> SweepReport:
    report = SweepReport()

    with session_factory() as db:
        stale_ids = db.execute(
            select(QueueEntry.user_id)
            .outerjoin(UserPresence, UserPresence.user_id == QueueEntry.user_id)
            .where(
                or_(
                    UserPresence.user_id.is_(None),
                    UserPresence.state != PresenceState.WAITING,
                    UserPresence.reachable_until.is_(None),
                    UserPresence.reachable_until <= reachable_cutoff(now, settings),
                )
            )
            .order_by(QueueEntry.user_id)
        ).scalars().all()
        expired = db.execute(
            select(Pair.id, Pair.user1_id, Pair.user2_id)
            .where(Pair.status == PairStatus.ACTIVE, Pair.vote_expires_at <= now)
            .order_by(Pair.vote_expires_at)
        ).all()
        pending = db.execute(
            select(Pair.id, Pair.user1_id, Pair.user2_id)
            .where(Pair.status == PairStatus.PENDING)
            .order_by(Pair.created_at)
        ).all()

    for user_id in stale_ids:
        if _run_item(report, "stale_entry", user_id, lambda: _drop_stale_entry(session_factory, locks, user_id, now, settings)):
            report.stale_dequeued += 1

    for pair_id, user1_id, user2_id in expired:
        members = (user1_id, user2_id)
        if _run_item(report, "vote_expiry", pair_id, lambda: _resolve_expired(session_factory, locks, pair_id, members, now, settings)):
            report.votes_resolved += 1

    for pair_id, user1_id, user2_id in pending:
        members = (user1_id, user2_id)
        if _run_item(report, "pending_pair", pair_id, lambda: _unwind_pending(session_factory, locks, pair_id, members, now, settings)):
            report.pairs_cancelled += 1

    with session_factory() as db:
        waiting = [slot.user_id for slot in snapshot(db, now, settings)]

    for user_id in sorted(waiting):
        aged = _run_item(report, "queue_aging", user_id, lambda: _age_entry(session_factory, locks, user_id, now, settings))
        if aged:
            credited, relaxed = aged
            report.entries_credited += int(credited)
            report.entries_relaxed += int(relaxed)

    if retry_matching:
        # aging may have reordered the pool
        with session_factory() as db:
            waiting = [slot.user_id for slot in snapshot(db, now, settings)]
        for user_id in waiting:
            result = _run_item(
                report,
                "retry_matching",
                user_id,
                lambda: attempt_pair(session_factory, locks, user_id, now, settings).status == PairingStatus.PAIRED,
            )
            if result:
                report.pairs_created += 1

    logger.info("[SWEEP] done %s", {k: v for k, v in report.as_dict().items() if k != "errors"})
    return report


def _lock_user_and_partner(session_factory, locks: UserLocks, user_id: str, settings: MatchSettings) -> list[str]:
    """Lock the user and whoever they are paired with; the pairing may move under us."""
    for _ in range(max(1, settings.lock_retry_attempts)):
        with session_factory() as db:
            presence = get_presence(db, user_id)
            partner_id = presence.partner_id if presence is not None else None
        ids = [user_id] + ([partner_id] if partner_id else [])
        held = acquire_with_retries(locks, ids, settings.lock_retry_attempts, settings.lock_retry_delay_seconds)
        if held is None:
            raise LockBusy(ids)
        with session_factory() as db:
            current = get_presence(db, user_id)
            current_partner = current.partner_id if current is not None else None
        if current_partner == partner_id:
            return held
        release_all(locks, held)
    raise LockBusy([user_id])


def leave(session_factory, locks: UserLocks, user_id: str, now: datetime, settings: MatchSettings) -> PresenceState:
    held = acquire_with_retries(locks, [user_id], settings.lock_retry_attempts, settings.lock_retry_delay_seconds)
    if held is None:
        raise LockBusy([user_id])
    try:
        with session_factory() as db:
            presence = get_presence(db, user_id, for_update=True)
            if presence is None:
                return PresenceState.IDLE
            if presence.is_paired:
                raise QueueConflict(user_id, presence.state)
            if dequeue(db, user_id) is not None or presence.state == PresenceState.WAITING:
                log_match_event(db, user_id, QUEUE_LEFT, payload={"reason": "left"}, now=now)
            presence.enter_idle()
            db.commit()
            return presence.state
    finally:
        release_all(locks, held)


def start_cooldown(db, presence: UserPresence, now: datetime, settings: MatchSettings) -> None:
    if settings.cooldown_seconds <= 0:
        return
    presence.cooldown_until = now + timedelta(seconds=settings.cooldown_seconds)
    log_match_event(
        db,
        presence.user_id,
        COOLDOWN_STARTED,
        payload={"cooldown_until": presence.cooldown_until.isoformat()},
        now=now,
    )


def handle_disconnect(session_factory, locks: UserLocks, user_id: str, now: datetime, settings: MatchSettings) -> dict[str, Any]:
    """Explicit disconnect: leave the pool or unwind the current pair at once."""
    held = _lock_user_and_partner(session_factory, locks, user_id, settings)
    try:
        with session_factory() as db:
            presence = get_presence(db, user_id, for_update=True)
            if presence is None:
                return {"user_id": user_id, "state": PresenceState.IDLE.value, "pair_id": None, "pair_status": None}

            pair = get_pair(db, presence.pair_id, for_update=True) if presence.pair_id else None
            if pair is None:
                if dequeue(db, user_id) is not None:
                    log_match_event(db, user_id, QUEUE_LEFT, payload={"reason": "disconnected"}, now=now)
                presence.enter_idle()
            elif pair.status == PairStatus.PENDING:
                cancel_pair(db, pair, CancelReason.DISCONNECTED, now, requeue_users=[pair.partner_of(user_id)])
                start_cooldown(db, presence, now, settings)
            elif pair.status == PairStatus.ACTIVE:
                outcome = resolve_outcome(pair.user1_vote, pair.user2_vote, window_closed=True)
                apply_resolution(db, pair, outcome, now, settings, force_idle=[user_id])
                start_cooldown(db, presence, now, settings)
            else:
                presence.enter_idle()
            db.commit()
            logger.info("[SWEEP] disconnect user_id=%s pair_id=%s", user_id, pair.id if pair is not None else None)
            return {
                "user_id": user_id,
                "state": presence.state.value,
                "pair_id": pair.id if pair is not None else None,
                "pair_status": pair.status.value if pair is not None else None,
            }
    finally:
        release_all(locks, held)
