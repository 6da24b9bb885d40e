from fastapi import APIRouter, Depends, HTTPException

from ..deps import busy, current_user_id, get_matchmaker
from ..domain import PairingStatus, PresenceState
from ..schemas import (
    DisconnectResponse,
    HeartbeatResponse,
    LeaveResponse,
    PairingResponse,
    PreferencesUpdate,
    StatusResponse,
)
from ..services.locks import LockBusy
from ..services.matchmaking import Matchmaker
from ..services.queue import QueueConflict

router = APIRouter()


@router.post("/queue/join", response_model=PairingResponse)
def join_queue(user_id: str = Depends(current_user_id), matchmaker: Matchmaker = Depends(get_matchmaker)) -> PairingResponse:
    result = matchmaker.request_pairing(user_id)
    if result.status == PairingStatus.CONFLICT:
        raise HTTPException(status_code=409, detail={"message": result.detail, "pair_id": result.pair_id})
    return PairingResponse(
        status=result.status.value,
        pair_id=result.pair_id,
        partner_id=result.partner_id,
        detail=result.detail,
    )


@router.post("/queue/leave", response_model=LeaveResponse)
def leave_queue(user_id: str = Depends(current_user_id), matchmaker: Matchmaker = Depends(get_matchmaker)) -> LeaveResponse:
    try:
        state = matchmaker.leave(user_id)
    except QueueConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except LockBusy as exc:
        raise busy(str(exc))
    return LeaveResponse(user_id=user_id, state=state.value)


@router.post("/presence/heartbeat", response_model=HeartbeatResponse)
def presence_heartbeat(user_id: str = Depends(current_user_id), matchmaker: Matchmaker = Depends(get_matchmaker)) -> dict:
    out = matchmaker.heartbeat(user_id)
    if out["state"] == PresenceState.WAITING.value:
        # a waiting user is retried on every heartbeat, not only on the sweep
        result = matchmaker.attempt_pair(user_id)
        out["pairing"] = PairingResponse(
            status=result.status.value,
            pair_id=result.pair_id,
            partner_id=result.partner_id,
            detail=result.detail,
        )
    return out


@router.post("/presence/disconnect", response_model=DisconnectResponse)
def presence_disconnect(user_id: str = Depends(current_user_id), matchmaker: Matchmaker = Depends(get_matchmaker)) -> dict:
    try:
        return matchmaker.disconnect(user_id)
    except LockBusy as exc:
        raise busy(str(exc))


@router.get("/status", response_model=StatusResponse)
def my_status(user_id: str = Depends(current_user_id), matchmaker: Matchmaker = Depends(get_matchmaker)) -> dict:
    return matchmaker.get_status(user_id)


@router.put("/preferences")
def update_preferences(
    payload: PreferencesUpdate,
    user_id: str = Depends(current_user_id),
    matchmaker: Matchmaker = Depends(get_matchmaker),
) -> dict:
    try:
        return matchmaker.set_preferences(user_id, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
