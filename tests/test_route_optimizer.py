"""Tests for distance helpers and collection route ordering."""

import pytest

from ekotaka.errors import ValidationError
from ekotaka.maps.geo import bounding_box, haversine_m, valid_coordinates
from ekotaka.maps.hotspots import report_hotspot
from ekotaka.maps.route_optimizer import MAX_WAYPOINTS, STRATEGIES, Waypoint, optimize_route

ORIGIN = (90.4000, 23.8000)


def _stop(idx, lat_offset, weight=1.0, lng_offset=0.0, value=None):
    return Waypoint(
        id=f"stop-{idx}",
        coordinates=(ORIGIN[0] + lng_offset, ORIGIN[1] + lat_offset),
        address=f"Stop {idx}",
        weight=weight,
        value=value,
    )


def test_haversine_one_degree_of_latitude():
    assert haversine_m((0.0, 0.0), (0.0, 1.0)) == pytest.approx(111195, rel=1e-3)
    assert haversine_m(ORIGIN, ORIGIN) == 0.0


def test_bounding_box_encloses_radius():
    min_lng, min_lat, max_lng, max_lat = bounding_box(ORIGIN, 5000)
    assert haversine_m(ORIGIN, (ORIGIN[0], max_lat)) == pytest.approx(5000, rel=1e-3)
    assert haversine_m(ORIGIN, (max_lng, ORIGIN[1])) >= 4999
    assert min_lng < ORIGIN[0] < max_lng and min_lat < ORIGIN[1] < max_lat


@pytest.mark.parametrize(
    "value,expected",
    [
        ([90.4, 23.8], True),
        ((-180, 90), True),
        ([181, 0], False),
        ([0, -91], False),
        (["a", 1], False),
        ([1.0], False),
        ("90.4,23.8", False),
    ],
)
def test_valid_coordinates(value, expected):
    assert valid_coordinates(value) is expected


def test_nearest_visits_closest_first():
    stops = [_stop(0, 0.03), _stop(1, 0.01), _stop(2, 0.02)]
    route = optimize_route(ORIGIN, stops, "nearest")
    assert route["routeOrder"] == [1, 2, 0]
    assert route["strategy"] == "nearest"
    assert route["summary"]["totalStops"] == 3
    assert route["totalDistance"] == pytest.approx(haversine_m(ORIGIN, stops[0].coordinates), rel=1e-3)


def test_nearest_is_biased_toward_heavy_stops():
    light_close = _stop(0, 0.009, weight=0.0)
    heavy_farther = _stop(1, -0.0135, weight=10.0)
    route = optimize_route(ORIGIN, [light_close, heavy_farther], "nearest")
    assert route["routeOrder"] == [1, 0]


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_every_strategy_returns_a_permutation(strategy):
    stops = [
        _stop(i, 0.002 * (i % 5), weight=1 + i, lng_offset=0.003 * (i % 3)) for i in range(8)
    ]
    route = optimize_route(ORIGIN, stops, strategy)
    assert sorted(route["routeOrder"]) == list(range(8))
    assert [w["id"] for w in route["waypoints"]] == [f"stop-{i}" for i in route["routeOrder"]]


def test_balanced_picks_strategy_from_average_value():
    heavy = [_stop(i, 0.01 * (i + 1), weight=20.0) for i in range(3)]
    light = [_stop(i, 0.01 * (i + 1), weight=1.0) for i in range(3)]
    assert optimize_route(ORIGIN, heavy, "balanced")["strategy"] == "weighted"
    assert optimize_route(ORIGIN, light, "balanced")["strategy"] == "nearest"


def test_route_totals_and_cap():
    stops = [_stop(i, 0.001 * (i + 1), weight=2.0) for i in range(MAX_WAYPOINTS + 5)]
    route = optimize_route(ORIGIN, stops, "nearest")
    assert route["summary"]["totalStops"] == MAX_WAYPOINTS
    assert route["summary"]["totalWeight"] == 2.0 * MAX_WAYPOINTS
    assert route["estimatedValue"] == 60.0 * MAX_WAYPOINTS


def test_empty_route():
    route = optimize_route(ORIGIN, [], "weighted")
    assert route["routeOrder"] == []
    assert route["summary"]["totalStops"] == 0
    assert route["totalDistance"] == 0.0


@pytest.mark.asyncio
async def test_hotspot_report_needs_a_finite_positive_weight(db_session):
    for weight in (float("nan"), float("inf"), "-inf", 0):
        with pytest.raises(ValidationError) as exc_info:
            await report_hotspot(db_session, "collector-1", [90.40, 23.80], "Canal bank", weight)
        assert [e.field for e in exc_info.value.errors] == ["estimatedAvailable.totalWeight"]

    hotspot, merged = await report_hotspot(db_session, "collector-1", [90.40, 23.80], "Canal bank", "4.5")
    assert merged is False
    assert hotspot.total_weight == 4.5

    with pytest.raises(ValidationError) as exc_info:
        await report_hotspot(
            db_session, "collector-1", [90.40, 23.80], "Canal bank", 2, categories={"PET": float("inf")}
        )
    assert exc_info.value.errors[0].field == "estimatedAvailable.categories.PET"
    assert hotspot.total_weight == 4.5
