import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Enum, Index, Integer, String, TypeDecorator

from .database import Base
from .domain import (
    PAIRED_STATES,
    CancelReason,
    InvariantViolation,
    Outcome,
    PairStatus,
    PresenceState,
    Vote,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend, SQLite included."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=24,
        values_callable=lambda members: [m.value for m in members],
    )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class UserPresence(Base):
    __tablename__ = "user_presence"

    user_id = Column(String, primary_key=True)
    state = Column(_enum(PresenceState, "presence_state"), nullable=False, default=PresenceState.IDLE)
    reachable_until = Column(UTCDateTime, nullable=True)
    partner_id = Column(String, nullable=True)
    pair_id = Column(String, nullable=True)
    carried_fairness = Column(Integer, nullable=False, default=0)
    cooldown_until = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc, onupdate=_now_utc)

    __table_args__ = (
        CheckConstraint(
            "(state IN ('matched', 'voting') AND partner_id IS NOT NULL AND pair_id IS NOT NULL)"
            " OR (state IN ('idle', 'waiting') AND partner_id IS NULL AND pair_id IS NULL)",
            name="ck_user_presence_pair_refs",
        ),
        Index("idx_user_presence_state_reachable", "state", "reachable_until"),
    )

    def enter_waiting(self) -> None:
        self.state = PresenceState.WAITING
        self.partner_id = None
        self.pair_id = None

    def enter_idle(self) -> None:
        self.state = PresenceState.IDLE
        self.partner_id = None
        self.pair_id = None
        self.carried_fairness = 0

    def enter_matched(self, partner_id: str, pair_id: str) -> None:
        if not partner_id or not pair_id or partner_id == self.user_id:
            raise InvariantViolation(f"user {self.user_id} cannot be matched to {partner_id!r} in pair {pair_id!r}")
        self.state = PresenceState.MATCHED
        self.partner_id = partner_id
        self.pair_id = pair_id

    def enter_voting(self) -> None:
        if self.state != PresenceState.MATCHED or not self.pair_id:
            raise InvariantViolation(f"user {self.user_id} must be matched before voting (state={self.state})")
        self.state = PresenceState.VOTING

    @property
    def is_paired(self) -> bool:
        return self.state in PAIRED_STATES

    def in_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now


class QueueEntry(Base):
    __tablename__ = "queue_entry"

    user_id = Column(String, primary_key=True)
    fairness_score = Column(Integer, nullable=False, default=0)
    enqueued_at = Column(UTCDateTime, nullable=False)
    credited_at = Column(UTCDateTime, nullable=False)
    relaxation_stage = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("relaxation_stage >= 0", name="ck_queue_entry_stage"),
        Index("idx_queue_entry_priority", fairness_score.desc(), enqueued_at.asc()),
    )


class Pair(Base):
    __tablename__ = "pair"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user1_id = Column(String, nullable=False, index=True)
    user2_id = Column(String, nullable=False, index=True)
    status = Column(_enum(PairStatus, "pair_status"), nullable=False, default=PairStatus.PENDING)
    user1_acknowledged_at = Column(UTCDateTime, nullable=True)
    user2_acknowledged_at = Column(UTCDateTime, nullable=True)
    vote_expires_at = Column(UTCDateTime, nullable=True)
    user1_vote = Column(_enum(Vote, "pair_vote"), nullable=True)
    user2_vote = Column(_enum(Vote, "pair_vote"), nullable=True)
    outcome = Column(_enum(Outcome, "pair_outcome"), nullable=True)
    cancel_reason = Column(_enum(CancelReason, "pair_cancel_reason"), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    resolved_at = Column(UTCDateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("user1_id <> user2_id", name="ck_pair_distinct_users"),
        CheckConstraint(
            "(outcome IS NOT NULL AND status = 'completed') OR (outcome IS NULL AND status <> 'completed')",
            name="ck_pair_outcome_when_completed",
        ),
        CheckConstraint(
            "(vote_expires_at IS NOT NULL AND status = 'active') OR (vote_expires_at IS NULL AND status <> 'active')",
            name="ck_pair_window_when_active",
        ),
        Index("idx_pair_status", "status"),
    )

    def has_member(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def partner_of(self, user_id: str) -> str:
        if user_id == self.user1_id:
            return self.user2_id
        if user_id == self.user2_id:
            return self.user1_id
        raise InvariantViolation(f"user {user_id} is not part of pair {self.id}")

    def vote_of(self, user_id: str) -> Vote | None:
        return self.user1_vote if user_id == self.user1_id else self.user2_vote

    def acknowledged_at(self, user_id: str) -> datetime | None:
        return self.user1_acknowledged_at if user_id == self.user1_id else self.user2_acknowledged_at

    @property
    def is_open(self) -> bool:
        return self.status in (PairStatus.PENDING, PairStatus.ACTIVE)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user1_id": self.user1_id,
            "user2_id": self.user2_id,
            "status": self.status.value,
            "user1_acknowledged_at": self.user1_acknowledged_at.isoformat() if self.user1_acknowledged_at else None,
            "user2_acknowledged_at": self.user2_acknowledged_at.isoformat() if self.user2_acknowledged_at else None,
            "vote_expires_at": self.vote_expires_at.isoformat() if self.vote_expires_at else None,
            "user1_vote": self.user1_vote.value if self.user1_vote else None,
            "user2_vote": self.user2_vote.value if self.user2_vote else None,
            "outcome": self.outcome.value if self.outcome else None,
            "cancel_reason": self.cancel_reason.value if self.cancel_reason else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


class PairHistory(Base):
    __tablename__ = "pair_history"

    user1_id = Column(String, primary_key=True)
    user2_id = Column(String, primary_key=True)
    pair_id = Column(String, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        CheckConstraint("user1_id <> user2_id", name="ck_pair_history_distinct_users"),
        Index("idx_pair_history_reverse", "user2_id", "user1_id"),
    )


class UserPreference(Base):
    __tablename__ = "user_preference"

    user_id = Column(String, primary_key=True)
    gender = Column(String, nullable=True)
    age = Column(Integer, nullable=True)
    desired_gender = Column(String, nullable=False, default="all")
    min_age = Column(Integer, nullable=True)
    max_age = Column(Integer, nullable=True)
    region_tags = Column(JSON, nullable=False, default=list)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc, onupdate=_now_utc)


class MatchEvent(Base):
    __tablename__ = "match_event"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False)
    pair_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        Index("idx_match_event_user_created", "user_id", "created_at"),
        Index("idx_match_event_pair", "pair_id"),
    )
