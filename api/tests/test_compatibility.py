from spinmatch.services.compatibility import (
    age_compatible,
    compatible_at_stage,
    effective_stage,
    gender_compatible,
    matching_stage,
    region_compatible,
)
from spinmatch.services.preferences import Criteria


def test_gender_must_match_in_both_directions():
    w_seeking_m = Criteria(gender="woman", desired_gender="man")
    m_seeking_w = Criteria(gender="man", desired_gender="woman")
    m_seeking_m = Criteria(gender="man", desired_gender="man")
    assert gender_compatible(w_seeking_m, m_seeking_w)
    assert not gender_compatible(w_seeking_m, m_seeking_m)


def test_open_gender_preference_accepts_anyone_but_a_specific_one_needs_a_gender():
    open_pref = Criteria(gender=None)
    specific = Criteria(gender="man", desired_gender="woman")
    assert open_pref.accepts_gender(None)
    assert not specific.accepts_gender(None)


def test_ages_must_fall_in_each_others_range():
    a = Criteria(age=30, min_age=28, max_age=35)
    b = Criteria(age=33, min_age=25, max_age=31)
    c = Criteria(age=40)
    assert age_compatible(a, b)
    assert not age_compatible(a, c)
    assert not age_compatible(a, Criteria(age=None))


def test_region_overlap_or_either_side_empty():
    nyc = Criteria(region_tags=frozenset({"nyc"}))
    sf = Criteria(region_tags=frozenset({"sf"}))
    both = Criteria(region_tags=frozenset({"nyc", "sf"}))
    anywhere = Criteria()
    assert region_compatible(nyc, both)
    assert region_compatible(nyc, anywhere)
    assert not region_compatible(nyc, sf)


def test_relaxed_stage_drops_region_but_not_history():
    nyc = Criteria(region_tags=frozenset({"nyc"}))
    sf = Criteria(region_tags=frozenset({"sf"}))
    assert not compatible_at_stage(nyc, sf, 0, ever_paired=False)
    assert compatible_at_stage(nyc, sf, 1, ever_paired=False)
    assert not compatible_at_stage(nyc, sf, 1, ever_paired=True)
    assert not compatible_at_stage(Criteria(), Criteria(), 0, ever_paired=True)


def test_both_sides_must_have_relaxed():
    nyc = Criteria(region_tags=frozenset({"nyc"}))
    sf = Criteria(region_tags=frozenset({"sf"}))
    assert effective_stage(1, 0) == 0
    assert matching_stage(nyc, sf, 1, 0, ever_paired=False) is None
    assert matching_stage(nyc, sf, 1, 1, ever_paired=False) == 1


def test_strictest_passing_stage_is_reported():
    assert matching_stage(Criteria(), Criteria(), 1, 1, ever_paired=False) == 0
