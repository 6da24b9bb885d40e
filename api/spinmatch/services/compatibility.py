from .preferences import Criteria

STRICT_STAGE = 0
RELAXED_STAGE = 1


def gender_compatible(u: Criteria, v: Criteria) -> bool:
    return u.accepts_gender(v.gender) and v.accepts_gender(u.gender)


def age_compatible(u: Criteria, v: Criteria) -> bool:
    return u.accepts_age(v.age) and v.accepts_age(u.age)


def region_compatible(u: Criteria, v: Criteria) -> bool:
    if not u.region_tags or not v.region_tags:
        return True
    return bool(u.region_tags & v.region_tags)


def compatible_at_stage(u: Criteria, v: Criteria, stage: int, ever_paired: bool) -> bool:
    if ever_paired:
        return False
    if not gender_compatible(u, v) or not age_compatible(u, v):
        return False
    if stage <= STRICT_STAGE:
        return region_compatible(u, v)
    return True


def effective_stage(user_stage: int, candidate_stage: int) -> int:
    # a region mismatch is only tolerated once both sides have relaxed
    return max(STRICT_STAGE, min(user_stage, candidate_stage))


def matching_stage(u: Criteria, v: Criteria, user_stage: int, candidate_stage: int, ever_paired: bool) -> int | None:
    """Strictest stage at which the two users are compatible, or None."""
    ceiling = effective_stage(user_stage, candidate_stage)
    for stage in range(STRICT_STAGE, ceiling + 1):
        if compatible_at_stage(u, v, stage, ever_paired):
            return stage
    return None
