from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_, select

from ..domain import canonical_pair
from ..models import PairHistory, UserPreference

ANY_GENDER = "all"


def _normalize_gender(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    return v or None


def _normalize_regions(values: Any) -> frozenset[str]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        return frozenset()
    out: set[str] = set()
    for value in values:
        v = str(value or "").strip().lower()
        if v:
            out.add(v)
    return frozenset(out)


@dataclass(frozen=True)
class Criteria:
    gender: str | None = None
    age: int | None = None
    desired_gender: str = ANY_GENDER
    min_age: int | None = None
    max_age: int | None = None
    region_tags: frozenset[str] = field(default_factory=frozenset)

    def accepts_gender(self, gender: str | None) -> bool:
        if self.desired_gender == ANY_GENDER:
            return True
        return gender is not None and gender == self.desired_gender

    def accepts_age(self, age: int | None) -> bool:
        if self.min_age is None and self.max_age is None:
            return True
        if age is None:
            return False
        if self.min_age is not None and age < self.min_age:
            return False
        if self.max_age is not None and age > self.max_age:
            return False
        return True


def criteria_from_row(row: UserPreference | None) -> Criteria:
    if row is None:
        return Criteria()
    return Criteria(
        gender=_normalize_gender(row.gender),
        age=row.age,
        desired_gender=_normalize_gender(row.desired_gender) or ANY_GENDER,
        min_age=row.min_age,
        max_age=row.max_age,
        region_tags=_normalize_regions(row.region_tags),
    )


def get_criteria(db, user_id: str) -> Criteria:
    row = db.execute(select(UserPreference).where(UserPreference.user_id == user_id)).scalars().first()
    return criteria_from_row(row)


def get_criteria_many(db, user_ids: list[str]) -> dict[str, Criteria]:
    if not user_ids:
        return {}
    rows = db.execute(select(UserPreference).where(UserPreference.user_id.in_(user_ids))).scalars().all()
    by_user = {r.user_id: criteria_from_row(r) for r in rows}
    return {uid: by_user.get(uid, Criteria()) for uid in user_ids}


def set_criteria(
    db,
    user_id: str,
    *,
    gender: str | None = None,
    age: int | None = None,
    desired_gender: str | None = ANY_GENDER,
    min_age: int | None = None,
    max_age: int | None = None,
    region_tags: list[str] | None = None,
) -> Criteria:
    if min_age is not None and max_age is not None and min_age > max_age:
        raise ValueError("min_age must not exceed max_age")
    row = db.execute(select(UserPreference).where(UserPreference.user_id == user_id)).scalars().first()
    if row is None:
        row = UserPreference(user_id=user_id)
        db.add(row)
    row.gender = _normalize_gender(gender)
    row.age = age
    row.desired_gender = _normalize_gender(desired_gender) or ANY_GENDER
    row.min_age = min_age
    row.max_age = max_age
    row.region_tags = sorted(_normalize_regions(region_tags or []))
    return criteria_from_row(row)


def has_ever_paired(db, user_a: str, user_b: str) -> bool:
    u1, u2 = canonical_pair(user_a, user_b)
    row = db.execute(
        select(PairHistory.pair_id).where(PairHistory.user1_id == u1, PairHistory.user2_id == u2)
    ).first()
    return row is not None


def paired_partners(db, user_id: str) -> set[str]:
    rows = db.execute(
        select(PairHistory.user1_id, PairHistory.user2_id).where(
            or_(PairHistory.user1_id == user_id, PairHistory.user2_id == user_id)
        )
    ).all()
    return {u2 if u1 == user_id else u1 for u1, u2 in rows}
