from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import func, select

from ..config import MatchSettings
from ..domain import PairingResult, PairingStatus, PairStatus, PresenceState, SweepReport, Vote, VoteResult
from ..models import Pair, QueueEntry, UserPresence
from . import resolver, voting
from .events import list_events
from .locks import LockBusy, UserLocks, acquire_with_retries, release_all
from .pairing import CONTENDED, attempt_pair
from .preferences import set_criteria
from .presence import get_presence, heartbeat, is_reachable_row, reachable_cutoff
from .queue import QueueConflict, enqueue, get_entry

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Matchmaker:
    """Entry points used by the HTTP routes, the scheduler and the scripts."""

    def __init__(
        self,
        session_factory,
        locks: UserLocks,
        settings: MatchSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.locks = locks
        self.settings = settings
        self.clock = clock

    def _now(self, now: datetime | None) -> datetime:
        return now if now is not None else self.clock()

    def heartbeat(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        now = self._now(now)
        with self.session_factory() as db:
            presence = heartbeat(db, user_id, now, self.settings)
            db.commit()
            return {
                "user_id": user_id,
                "state": presence.state.value,
                "reachable_until": presence.reachable_until.isoformat(),
            }

    def join(self, user_id: str, now: datetime | None = None) -> None:
        now = self._now(now)
        held = acquire_with_retries(
            self.locks, [user_id], self.settings.lock_retry_attempts, self.settings.lock_retry_delay_seconds
        )
        if held is None:
            raise LockBusy([user_id])
        try:
            with self.session_factory() as db:
                enqueue(db, user_id, now, self.settings)
                db.commit()
        finally:
            release_all(self.locks, held)

    def attempt_pair(self, user_id: str, now: datetime | None = None) -> PairingResult:
        return attempt_pair(self.session_factory, self.locks, user_id, self._now(now), self.settings)

    def request_pairing(self, user_id: str, now: datetime | None = None) -> PairingResult:
        """Join the pool and try to pair right away.

        Joining twice is harmless. A user already in a pair, or still cooling
        down after a disconnect, gets a conflict. A busy lock on the user is
        reported as no pair found.
        """
        try:
            self.join(user_id, now)
        except LockBusy:
            # still retryable from a heartbeat or the next sweep
            return PairingResult.no_pair(CONTENDED)
        except QueueConflict as exc:
            with self.session_factory() as db:
                presence = get_presence(db, user_id)
                pair_id = presence.pair_id if presence is not None else None
            return PairingResult(status=PairingStatus.CONFLICT, pair_id=pair_id, detail=str(exc))

        result = self.attempt_pair(user_id, now)
        for _ in range(max(0, self.settings.lock_retry_attempts - 1)):
            if result.detail != CONTENDED:
                break
            time.sleep(self.settings.lock_retry_delay_seconds)
            result = self.attempt_pair(user_id, now)

        if result.status == PairingStatus.NO_PAIR_FOUND:
            # a concurrent attempt from the other side may have paired us already
            with self.session_factory() as db:
                presence = get_presence(db, user_id)
                if presence is not None and presence.is_paired:
                    return PairingResult.paired(presence.pair_id, presence.partner_id)
        return result

    def leave(self, user_id: str, now: datetime | None = None) -> PresenceState:
        return resolver.leave(self.session_factory, self.locks, user_id, self._now(now), self.settings)

    def disconnect(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        return resolver.handle_disconnect(self.session_factory, self.locks, user_id, self._now(now), self.settings)

    def acknowledge(self, user_id: str, pair_id: str, now: datetime | None = None) -> VoteResult:
        return voting.acknowledge(self.session_factory, self.locks, user_id, pair_id, self._now(now), self.settings)

    def submit_vote(self, user_id: str, pair_id: str, choice: Vote | str, now: datetime | None = None) -> VoteResult:
        return voting.submit_vote(self.session_factory, self.locks, user_id, pair_id, choice, self._now(now), self.settings)

    def sweep(self, now: datetime | None = None, retry_matching: bool = True) -> SweepReport:
        return resolver.run_sweep(self.session_factory, self.locks, self._now(now), self.settings, retry_matching=retry_matching)

    def get_status(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        now = self._now(now)
        with self.session_factory() as db:
            presence = get_presence(db, user_id)
            entry = get_entry(db, user_id)
            pair = None
            if presence is not None and presence.pair_id:
                pair = db.execute(select(Pair).where(Pair.id == presence.pair_id)).scalars().first()
            return {
                "user_id": user_id,
                "state": presence.state.value if presence is not None else PresenceState.IDLE.value,
                "reachable": is_reachable_row(presence, now, self.settings),
                "partner_id": presence.partner_id if presence is not None else None,
                "cooldown_until": presence.cooldown_until.isoformat()
                if presence is not None and presence.in_cooldown(now)
                else None,
                "queue": None
                if entry is None
                else {
                    "fairness_score": entry.fairness_score,
                    "enqueued_at": entry.enqueued_at.isoformat(),
                    "relaxation_stage": entry.relaxation_stage,
                },
                "pair": pair.as_dict() if pair is not None else None,
            }

    def queue_stats(self, now: datetime | None = None) -> dict[str, Any]:
        now = self._now(now)
        with self.session_factory() as db:
            waiting = db.execute(select(func.count()).select_from(QueueEntry)).scalar_one()
            reachable = db.execute(
                select(func.count())
                .select_from(QueueEntry)
                .join(UserPresence, UserPresence.user_id == QueueEntry.user_id)
                .where(
                    UserPresence.state == PresenceState.WAITING,
                    UserPresence.reachable_until > reachable_cutoff(now, self.settings),
                )
            ).scalar_one()
            fairness = db.execute(
                select(func.max(QueueEntry.fairness_score), func.avg(QueueEntry.fairness_score))
            ).one()
            by_status = dict(db.execute(select(Pair.status, func.count()).group_by(Pair.status)).all())
            by_outcome = dict(
                db.execute(
                    select(Pair.outcome, func.count()).where(Pair.status == PairStatus.COMPLETED).group_by(Pair.outcome)
                ).all()
            )
            presence_counts = dict(
                db.execute(select(UserPresence.state, func.count()).group_by(UserPresence.state)).all()
            )
        return {
            "waiting": int(waiting),
            "waiting_reachable": int(reachable),
            "max_fairness": int(fairness[0]) if fairness[0] is not None else None,
            "avg_fairness": round(float(fairness[1]), 2) if fairness[1] is not None else None,
            "presence": {state.value: int(presence_counts.get(state, 0)) for state in PresenceState},
            "pairs": {status.value: int(by_status.get(status, 0)) for status in PairStatus},
            "outcomes": {outcome.value: int(count) for outcome, count in by_outcome.items() if outcome is not None},
        }

    def list_events(self, user_id: str, since: datetime | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self.session_factory() as db:
            return list_events(db, user_id, since=since, limit=limit)

    def set_preferences(self, user_id: str, **criteria: Any) -> dict[str, Any]:
        with self.session_factory() as db:
            saved = set_criteria(db, user_id, **criteria)
            db.commit()
        return {
            "user_id": user_id,
            "gender": saved.gender,
            "age": saved.age,
            "desired_gender": saved.desired_gender,
            "min_age": saved.min_age,
            "max_age": saved.max_age,
            "region_tags": sorted(saved.region_tags),
        }
