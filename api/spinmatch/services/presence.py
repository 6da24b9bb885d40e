from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..config import MatchSettings
from ..domain import PresenceState
from ..models import UserPresence


def reachable_cutoff(now: datetime, settings: MatchSettings) -> datetime:
    return now - timedelta(seconds=settings.reachability_grace_seconds)


def is_reachable_row(presence: UserPresence | None, now: datetime, settings: MatchSettings) -> bool:
    if presence is None or presence.reachable_until is None:
        return False
    return presence.reachable_until > reachable_cutoff(now, settings)


def get_presence(db, user_id: str, *, for_update: bool = False) -> UserPresence | None:
    stmt = select(UserPresence).where(UserPresence.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalars().first()


def get_or_create_presence(db, user_id: str, *, for_update: bool = False) -> UserPresence:
    presence = get_presence(db, user_id, for_update=for_update)
    if presence is None:
        presence = UserPresence(user_id=user_id, state=PresenceState.IDLE, carried_fairness=0)
        try:
            with db.begin_nested():
                db.add(presence)
        except IntegrityError:
            # created by a concurrent first heartbeat
            presence = get_presence(db, user_id, for_update=for_update)
    return presence


def touch(presence: UserPresence, now: datetime, settings: MatchSettings) -> None:
    presence.reachable_until = now + timedelta(seconds=settings.heartbeat_ttl_seconds)


def heartbeat(db, user_id: str, now: datetime, settings: MatchSettings) -> UserPresence:
    presence = get_or_create_presence(db, user_id)
    touch(presence, now, settings)
    return presence


def is_reachable(db, user_id: str, now: datetime, settings: MatchSettings) -> bool:
    return is_reachable_row(get_presence(db, user_id), now, settings)
