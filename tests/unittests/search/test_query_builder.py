from artscout.search.query_builder import expand_queries
from artscout.search.search_models import ArtistProfile


def make_profile(**fields):
    values = {"id": "p1", "name": "Ada"}
    values.update(fields)
    return ArtistProfile(**values)


def test_adds_profile_location_and_primary_mediums():
    profile = make_profile(location="Berlin", mediums=["painting", "sculpture", "video"])

    queries = expand_queries(["art grants"], profile, None, 10)

    assert queries == [
        "art grants",
        "art grants Berlin",
        "art grants painting",
        "art grants sculpture",
    ]


def test_explicit_locations_replace_profile_location():
    profile = make_profile(location="Berlin")

    queries = expand_queries(["residency"], profile, ["Oslo", "Lisbon"], 10)

    assert queries == ["residency", "residency Oslo", "residency Lisbon"]


def test_other_medium_gets_no_variant():
    profile = make_profile(mediums=["other", "textiles"])

    assert expand_queries(["open call"], profile, None, 10) == ["open call", "open call textiles"]


def test_duplicates_are_dropped_and_result_capped():
    profile = make_profile(location="Paris")

    queries = expand_queries(["grants", "grants", "prizes"], profile, None, 3)

    assert queries == ["grants", "grants Paris", "prizes"]


def test_empty_base_queries_give_empty_result():
    assert expand_queries([], make_profile(location="Rome"), None, 5) == []
