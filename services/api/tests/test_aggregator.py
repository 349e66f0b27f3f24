import httpx
import pytest

from conftest import ROOT_FID, FakeHub, FakeNeynar, follower_msg, following_msg, neynar_user
from farmaps.aggregator import (
    NetworkAggregator,
    bucket_key,
    bucket_label,
    build_legend,
    compute_bounds,
    filter_profiles,
    group_pins,
    normalize_lng,
)
from farmaps.errors import InvalidRequestError, UpstreamClientError
from farmaps.limits import Bounded
from farmaps.schemas import Profile

LOC_A = (40.71, -74.0)
LOC_B = (51.5, -0.12)


def profile(fid, score=0.9, loc=LOC_A, city=None) -> Profile:
    lat, lng = loc if loc else (None, None)
    return Profile(fid=fid, username=f"user{fid}", score=score, lat=lat, lng=lng, city=city)


@pytest.mark.parametrize(
    "count, key, label",
    [
        (1, "b1", "1 user"),
        (2, "b2", "2–3 users"),
        (3, "b2", "2–3 users"),
        (4, "b4", "4–7 users"),
        (7, "b4", "4–7 users"),
        (8, "b8", "8+ users"),
        (250, "b8", "8+ users"),
    ],
)
def test_bucket_boundaries(count, key, label):
    assert bucket_key(count) == key
    assert bucket_label(count) == label


def test_score_filter_is_strict():
    result = filter_profiles(
        [profile(1, score=0.8), profile(2, score=0.81), profile(3, score=None)], 0.8
    )
    assert [p.fid for p in result.kept] == [2]
    assert result.below_score == 1
    assert result.missing_score == 1


def test_location_filter_ignores_score():
    result = filter_profiles([profile(1, score=0.99, loc=None), profile(2)], 0.8)
    assert [p.fid for p in result.kept] == [2]
    assert result.missing_location == 1


def test_identical_coordinates_share_a_pin():
    pins = group_pins([profile(1), profile(2), profile(3, loc=LOC_B)])

    assert [(p.count, {u.fid for u in p.users}) for p in pins] == [(1, {3}), (2, {1, 2})]
    assert all(p.count == len(p.users) for p in pins)


def test_nearby_but_distinct_coordinates_never_merge():
    pins = group_pins([profile(1, loc=(10.0, 10.0)), profile(2, loc=(10.0, 10.000001))])
    assert [p.count for p in pins] == [1, 1]


def test_pins_sorted_small_first():
    profiles = [profile(f, loc=LOC_A) for f in range(1, 5)] + [profile(9, loc=LOC_B)]
    pins = group_pins(profiles)
    assert [p.count for p in pins] == [1, 4]
    assert pins[1].bucket == "4–7 users"


def test_users_within_pin_sorted_by_score_then_name():
    pins = group_pins([profile(1, score=0.85), profile(2, score=0.95), profile(3, score=0.85)])
    assert [u.fid for u in pins[0].users] == [2, 1, 3]


def test_pin_city_falls_back_to_coordinates():
    pins = group_pins([profile(1, city=None), profile(2, city="New York")])
    assert pins[0].city == "New York"
    assert group_pins([profile(3, loc=LOC_B)])[0].city == "51.50, -0.12"


def test_group_by_city():
    pins = group_pins(
        [profile(1, city="Paris"), profile(2, loc=LOC_B, city=" paris"), profile(3, city="Rome")],
        by="city",
    )
    assert sorted(p.count for p in pins) == [1, 2]


def test_legend_tallies_buckets():
    profiles = (
        [profile(f, loc=(1.0, 1.0)) for f in range(1, 9)]
        + [profile(f, loc=(2.0, 2.0)) for f in range(10, 13)]
        + [profile(20, loc=(3.0, 3.0))]
    )
    legend = build_legend(group_pins(profiles))
    assert (legend.b1, legend.b2, legend.b4, legend.b8) == (1, 1, 0, 1)
    assert (legend.pins, legend.users) == (3, 12)


def test_bounds():
    assert compute_bounds([]) is None

    bounds = compute_bounds(group_pins([profile(1, loc=LOC_A), profile(2, loc=LOC_B)]))
    assert bounds.sw == (40.71, -74.0)
    assert bounds.ne == (51.5, -0.12)

    single = compute_bounds(group_pins([profile(1, loc=(89.0, 190.0))]))
    assert single.sw == (84.8, -170.25)
    assert single.ne == (85.05, -169.75)


def test_normalize_lng():
    assert normalize_lng(190) == -170
    assert normalize_lng(-540) == -180
    assert normalize_lng(45) == 45


def scenario(make_hub, make_neynar):
    hub = FakeHub(
        followers=[[follower_msg(1), follower_msg(2)]],
        following=[[following_msg(3)]],
    )
    neynar = FakeNeynar(users=[
        neynar_user(1, score=0.9, loc=LOC_A),
        neynar_user(2, score=0.5, loc=LOC_A),
        neynar_user(3, score=0.95, loc=LOC_B),
        neynar_user(ROOT_FID, score=0.99, loc=LOC_A),
    ])
    return hub, neynar, NetworkAggregator(make_hub(hub), make_neynar(neynar))


async def test_end_to_end_scenario(make_hub, make_neynar):
    hub, neynar, aggregator = scenario(make_hub, make_neynar)

    result = await aggregator.build_network(ROOT_FID, min_score=0.8)

    by_loc = {(p.lat, p.lng): p for p in result.points}
    assert set(by_loc) == {LOC_A, LOC_B}
    assert by_loc[LOC_A].count == 2
    assert {u.fid for u in by_loc[LOC_A].users} == {1, ROOT_FID}
    assert by_loc[LOC_B].count == 1
    assert [u.fid for u in by_loc[LOC_B].users] == [3]
    assert [p.count for p in result.points] == [1, 2]

    counts = result.counts
    assert (counts.followers, counts.following, counts.candidates) == (2, 1, 4)
    assert (counts.hydrated, counts.below_score, counts.included, counts.pins) == (4, 1, 3, 2)
    assert sorted(neynar.bulk_calls[0]) == [1, 2, 3, ROOT_FID]


async def test_repeat_requests_are_identical(make_hub, make_neynar):
    _, _, aggregator = scenario(make_hub, make_neynar)

    first = await aggregator.build_network(ROOT_FID)
    second = await aggregator.build_network(ROOT_FID)

    assert [p.model_dump() for p in first.points] == [p.model_dump() for p in second.points]
    assert first.counts == second.counts


async def test_mode_followers_skips_following(make_hub, make_neynar):
    hub, neynar, aggregator = scenario(make_hub, make_neynar)

    result = await aggregator.build_network(ROOT_FID, mode="followers")

    assert hub.calls_to("/v1/linksByFid") == []
    assert result.counts.following == 0
    assert sorted(neynar.bulk_calls[0]) == [1, 2, ROOT_FID]


async def test_root_included_even_without_links(make_hub, make_neynar):
    neynar = FakeNeynar(users=[neynar_user(ROOT_FID, score=0.9, loc=LOC_B)])
    aggregator = NetworkAggregator(make_hub(FakeHub()), make_neynar(neynar))

    result = await aggregator.build_network(ROOT_FID)

    assert neynar.bulk_calls == [[ROOT_FID]]
    assert [u.fid for u in result.points[0].users] == [ROOT_FID]


async def test_cap_applies_per_side(make_hub, make_neynar):
    hub = FakeHub(
        followers=[[follower_msg(n) for n in range(1, 20)]],
        following=[[following_msg(n) for n in range(50, 70)]],
    )
    neynar = FakeNeynar()
    aggregator = NetworkAggregator(make_hub(hub), make_neynar(neynar))

    result = await aggregator.build_network(ROOT_FID, limit=Bounded(5))

    assert result.counts.followers == 5
    assert result.counts.following == 5
    assert result.counts.candidates == 11


async def test_hydration_failure_aborts_everything(make_hub, make_neynar):
    hub = FakeHub(followers=[[follower_msg(1)]])
    aggregator = NetworkAggregator(
        make_hub(hub), make_neynar(lambda request: httpx.Response(401, text="bad key"))
    )

    with pytest.raises(UpstreamClientError):
        await aggregator.build_network(ROOT_FID)


async def test_invalid_root_fid(make_hub, make_neynar):
    aggregator = NetworkAggregator(make_hub(FakeHub()), make_neynar(FakeNeynar()))
    with pytest.raises(InvalidRequestError):
        await aggregator.build_network(-3)


async def test_city_network_geocodes_and_groups_by_city(make_hub, make_neynar, make_geocoder):
    neynar = FakeNeynar(relations={
        "followers": [[
            {**neynar_user(1, score=0.9), "profile": {"location": {"name": "Paris"}}},
            {**neynar_user(2, score=0.95), "location": "paris"},
            neynar_user(3, score=0.99),
        ]],
        "following": [[
            {**neynar_user(1, score=0.9), "profile": {"location": {"name": "Paris"}}},
            {**neynar_user(4, score=0.3), "location": "Rome"},
            {**neynar_user(5, score=0.9), "location": "Atlantis"},
        ]],
    })
    geo_calls = []

    def nominatim(request):
        geo_calls.append(request.url.params["q"])
        q = request.url.params["q"].lower()
        if q == "paris":
            return httpx.Response(200, json=[{"lat": "48.85", "lon": "2.35"}])
        if q == "rome":
            return httpx.Response(200, json=[{"lat": "41.9", "lon": "12.5"}])
        return httpx.Response(200, json=[])

    aggregator = NetworkAggregator(
        make_hub(FakeHub()), make_neynar(neynar), make_geocoder(nominatim)
    )

    result = await aggregator.build_city_network(ROOT_FID, min_score=0.8)

    assert len(result.points) == 1
    pin = result.points[0]
    assert (pin.lat, pin.lng, pin.count) == (48.85, 2.35, 2)
    assert {u.fid for u in pin.users} == {1, 2}
    assert result.counts.candidates == 5
    assert result.counts.below_score == 1
    assert result.counts.missing_location == 2
    assert geo_calls.count("Paris") + geo_calls.count("paris") == 1
