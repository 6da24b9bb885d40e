from fastapi import Header, HTTPException

from .config import ADMIN_TOKEN
from .domain import VoteResult, VoteStatus
from .services.matchmaking import Matchmaker

RETRY_AFTER_SECONDS = "1"

_matchmaker: Matchmaker | None = None


def get_matchmaker() -> Matchmaker:
    global _matchmaker
    if _matchmaker is None:
        from .scheduler import build_matchmaker

        _matchmaker = build_matchmaker()
    return _matchmaker


def current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Identity comes from the upstream identity provider and is trusted as is."""
    value = (x_user_id or "").strip()
    if not value:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    if len(value) > 128:
        raise HTTPException(status_code=400, detail="X-User-Id too long")
    return value


def validate_admin_token(token: str | None, admin_token: str | None) -> None:
    if not admin_token or not token or token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    validate_admin_token(x_admin_token, ADMIN_TOKEN)


def busy(detail: str) -> HTTPException:
    return HTTPException(status_code=503, detail=detail, headers={"Retry-After": RETRY_AFTER_SECONDS})


def raise_for_vote_result(result: VoteResult) -> None:
    if result.status == VoteStatus.CONFLICT:
        raise HTTPException(status_code=409, detail=result.detail or "conflict")
    if result.status == VoteStatus.WINDOW_EXPIRED:
        raise HTTPException(status_code=410, detail=result.detail or "vote window expired")
    if result.status == VoteStatus.BUSY:
        raise busy(result.detail or "busy")
