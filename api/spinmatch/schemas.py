from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .domain import Vote


class PairingResponse(BaseModel):
    status: str
    pair_id: str | None = None
    partner_id: str | None = None
    detail: str | None = None


class VoteRequest(BaseModel):
    choice: Vote


class VoteResponse(BaseModel):
    status: str
    pair_id: str | None = None
    pair_status: str | None = None
    outcome: str | None = None
    detail: str | None = None


class HeartbeatResponse(BaseModel):
    user_id: str
    state: str
    reachable_until: datetime
    pairing: PairingResponse | None = None


class LeaveResponse(BaseModel):
    user_id: str
    state: str


class DisconnectResponse(BaseModel):
    user_id: str
    state: str
    pair_id: str | None = None
    pair_status: str | None = None


class QueueInfo(BaseModel):
    fairness_score: int
    enqueued_at: datetime
    relaxation_stage: int


class StatusResponse(BaseModel):
    user_id: str
    state: str
    reachable: bool
    partner_id: str | None = None
    cooldown_until: datetime | None = None
    queue: QueueInfo | None = None
    pair: dict[str, Any] | None = None


class PreferencesUpdate(BaseModel):
    gender: str | None = None
    age: int | None = Field(default=None, ge=18, le=120)
    desired_gender: str = "all"
    min_age: int | None = Field(default=None, ge=18, le=120)
    max_age: int | None = Field(default=None, ge=18, le=120)
    region_tags: list[str] = Field(default_factory=list, max_length=20)


class EventOut(BaseModel):
    id: str
    event_type: str
    pair_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SweepResponse(BaseModel):
    stale_dequeued: int
    votes_resolved: int
    pairs_cancelled: int
    entries_relaxed: int
    entries_credited: int
    pairs_created: int
    failures: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
