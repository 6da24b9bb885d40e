from typing import Any

from fastapi import APIRouter, Depends

from ..deps import get_matchmaker, require_admin
from ..schemas import SweepResponse
from ..services.matchmaking import Matchmaker

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/sweep", response_model=SweepResponse)
def admin_sweep(retry_matching: bool = True, matchmaker: Matchmaker = Depends(get_matchmaker)) -> dict[str, Any]:
    return matchmaker.sweep(retry_matching=retry_matching).as_dict()


@router.get("/queue-stats")
def admin_queue_stats(matchmaker: Matchmaker = Depends(get_matchmaker)) -> dict[str, Any]:
    return matchmaker.queue_stats()
