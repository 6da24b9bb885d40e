from __future__ import annotations

from dataclasses import dataclass

from ..domain import InvariantViolation, Outcome, PairStatus, PresenceState, Vote

ACKNOWLEDGED = "both_acknowledged"
RESOLVE = "resolve"
CANCEL = "cancel"

_PAIR_TRANSITIONS: dict[tuple[PairStatus, str], PairStatus] = {
    (PairStatus.PENDING, ACKNOWLEDGED): PairStatus.ACTIVE,
    (PairStatus.PENDING, CANCEL): PairStatus.CANCELLED,
    (PairStatus.ACTIVE, RESOLVE): PairStatus.COMPLETED,
}


def next_pair_status(current: PairStatus, event: str) -> PairStatus:
    try:
        return _PAIR_TRANSITIONS[(PairStatus(current), event)]
    except KeyError:
        raise InvariantViolation(f"pair cannot go through {event!r} from {PairStatus(current).value}") from None


def resolve_outcome(first: Vote | None, second: Vote | None, *, window_closed: bool) -> Outcome | None:
    """Outcome for a pair of votes, order independent.

    ``None`` means the vote window is still open and the outcome cannot be
    decided yet. A decline decides immediately: the missing vote counts as a
    timeout.
    """
    votes = sorted([v for v in (first, second) if v is not None], key=lambda v: v.value)
    if len(votes) == 2:
        if votes == [Vote.ACCEPT, Vote.ACCEPT]:
            return Outcome.MUTUAL_MATCH
        if votes == [Vote.DECLINE, Vote.DECLINE]:
            return Outcome.MUTUAL_DECLINE
        return Outcome.ACCEPT_DECLINED
    if len(votes) == 1:
        if votes[0] == Vote.DECLINE:
            return Outcome.DECLINE_TIMEOUT
        return Outcome.ACCEPT_TIMEOUT if window_closed else None
    return Outcome.DOUBLE_TIMEOUT if window_closed else None


@dataclass(frozen=True)
class SideEffect:
    state: PresenceState
    fairness_boost: int = 0


def outcome_effects(outcome: Outcome, votes: dict[str, Vote | None], boost: int) -> dict[str, SideEffect]:
    if len(votes) != 2:
        raise InvariantViolation("an outcome needs exactly two sides")

    def each(state: PresenceState) -> dict[str, SideEffect]:
        return {user_id: SideEffect(state) for user_id in votes}

    if outcome == Outcome.MUTUAL_MATCH:
        return each(PresenceState.IDLE)
    if outcome in (Outcome.MUTUAL_DECLINE, Outcome.DECLINE_TIMEOUT):
        return each(PresenceState.WAITING)
    if outcome == Outcome.DOUBLE_TIMEOUT:
        return each(PresenceState.IDLE)
    if outcome == Outcome.ACCEPT_DECLINED:
        return {
            user_id: SideEffect(PresenceState.WAITING, boost if vote == Vote.ACCEPT else 0)
            for user_id, vote in votes.items()
        }
    if outcome == Outcome.ACCEPT_TIMEOUT:
        return {
            user_id: SideEffect(PresenceState.WAITING, boost) if vote == Vote.ACCEPT else SideEffect(PresenceState.IDLE)
            for user_id, vote in votes.items()
        }
    raise InvariantViolation(f"unknown outcome {outcome!r}")
