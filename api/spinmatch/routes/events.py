from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..deps import current_user_id, get_matchmaker
from ..schemas import EventOut
from ..services.matchmaking import Matchmaker

router = APIRouter()


@router.get("/events", response_model=list[EventOut])
def my_events(
    since: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    user_id: str = Depends(current_user_id),
    matchmaker: Matchmaker = Depends(get_matchmaker),
) -> list[dict]:
    return matchmaker.list_events(user_id, since=since, limit=limit)
