import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select

from ..models import MatchEvent

logger = logging.getLogger(__name__)

PAIRED = "paired"
VOTE_WINDOW_OPENED = "vote_window_opened"
OUTCOME_RESOLVED = "outcome_resolved"
PAIR_CANCELLED = "pair_cancelled"
VIDEO_SESSION_REQUESTED = "video_session_requested"
QUEUE_JOINED = "queue_joined"
QUEUE_LEFT = "queue_left"
QUEUE_DROPPED = "queue_dropped"
COOLDOWN_STARTED = "cooldown_started"


def log_match_event(
    db,
    user_id: str,
    event_type: str,
    pair_id: str | None = None,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> None:
    payload = payload or {}
    event = MatchEvent(user_id=user_id, pair_id=pair_id, event_type=event_type, payload=payload)
    if now is not None:
        event.created_at = now
    db.add(event)
    logger.info("[EVENT] %s user_id=%s pair_id=%s payload=%s", event_type, user_id, pair_id, payload)


def list_events(db, user_id: str, since: datetime | None = None, limit: int = 100) -> list[dict[str, Any]]:
    stmt = select(MatchEvent).where(MatchEvent.user_id == user_id)
    if since is not None:
        stmt = stmt.where(MatchEvent.created_at > since)
    stmt = stmt.order_by(MatchEvent.created_at.asc(), MatchEvent.id.asc()).limit(max(1, min(limit, 500)))
    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "pair_id": e.pair_id,
            "payload": e.payload or {},
            "created_at": e.created_at.isoformat(),
        }
        for e in db.execute(stmt).scalars().all()
    ]
