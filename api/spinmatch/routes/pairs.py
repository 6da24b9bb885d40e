from fastapi import APIRouter, Depends

from ..deps import current_user_id, get_matchmaker, raise_for_vote_result
from ..domain import VoteResult
from ..schemas import VoteRequest, VoteResponse
from ..services.matchmaking import Matchmaker

router = APIRouter()


def _vote_response(result: VoteResult) -> VoteResponse:
    raise_for_vote_result(result)
    return VoteResponse(
        status=result.status.value,
        pair_id=result.pair_id,
        pair_status=result.pair_status.value if result.pair_status else None,
        outcome=result.outcome.value if result.outcome else None,
        detail=result.detail,
    )


@router.post("/{pair_id}/acknowledge", response_model=VoteResponse)
def acknowledge_pair(
    pair_id: str,
    user_id: str = Depends(current_user_id),
    matchmaker: Matchmaker = Depends(get_matchmaker),
) -> VoteResponse:
    return _vote_response(matchmaker.acknowledge(user_id, pair_id))


@router.post("/{pair_id}/vote", response_model=VoteResponse)
def vote_on_pair(
    pair_id: str,
    payload: VoteRequest,
    user_id: str = Depends(current_user_id),
    matchmaker: Matchmaker = Depends(get_matchmaker),
) -> VoteResponse:
    return _vote_response(matchmaker.submit_vote(user_id, pair_id, payload.choice))
