from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class PresenceState(str, enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    MATCHED = "matched"
    VOTING = "voting"


PAIRED_STATES = frozenset({PresenceState.MATCHED, PresenceState.VOTING})


class PairStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_PAIR_STATUSES = frozenset({PairStatus.PENDING, PairStatus.ACTIVE})


class Vote(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class Outcome(str, enum.Enum):
    MUTUAL_MATCH = "mutual_match"
    ACCEPT_DECLINED = "accept_declined"
    MUTUAL_DECLINE = "mutual_decline"
    ACCEPT_TIMEOUT = "accept_timeout"
    DECLINE_TIMEOUT = "decline_timeout"
    DOUBLE_TIMEOUT = "double_timeout"


class CancelReason(str, enum.Enum):
    PARTNER_UNREACHABLE = "partner_unreachable"
    ACK_TIMEOUT = "ack_timeout"
    DISCONNECTED = "disconnected"


class InvariantViolation(RuntimeError):
    """Raised when a write would leave the data model in an invalid state."""


class PairingStatus(str, enum.Enum):
    PAIRED = "paired"
    NO_PAIR_FOUND = "no_pair_found"
    CONFLICT = "conflict"


@dataclass
class PairingResult:
    status: PairingStatus
    pair_id: str | None = None
    partner_id: str | None = None
    detail: str | None = None

    @classmethod
    def paired(cls, pair_id: str, partner_id: str) -> "PairingResult":
        return cls(status=PairingStatus.PAIRED, pair_id=pair_id, partner_id=partner_id)

    @classmethod
    def no_pair(cls, detail: str | None = None) -> "PairingResult":
        return cls(status=PairingStatus.NO_PAIR_FOUND, detail=detail)

    @classmethod
    def conflict(cls, detail: str) -> "PairingResult":
        return cls(status=PairingStatus.CONFLICT, detail=detail)


class VoteStatus(str, enum.Enum):
    RECORDED = "recorded"
    RESOLVED = "resolved"
    CONFLICT = "conflict"
    WINDOW_EXPIRED = "window_expired"
    BUSY = "busy"


@dataclass
class VoteResult:
    status: VoteStatus
    pair_id: str | None = None
    pair_status: PairStatus | None = None
    outcome: Outcome | None = None
    detail: str | None = None


@dataclass
class SweepReport:
    stale_dequeued: int = 0
    votes_resolved: int = 0
    pairs_cancelled: int = 0
    entries_relaxed: int = 0
    entries_credited: int = 0
    pairs_created: int = 0
    failures: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "stale_dequeued": self.stale_dequeued,
            "votes_resolved": self.votes_resolved,
            "pairs_cancelled": self.pairs_cancelled,
            "entries_relaxed": self.entries_relaxed,
            "entries_credited": self.entries_credited,
            "pairs_created": self.pairs_created,
            "failures": self.failures,
            "errors": list(self.errors),
        }


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    if user_a == user_b:
        raise InvariantViolation(f"a pair needs two distinct users, got {user_a!r} twice")
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)
