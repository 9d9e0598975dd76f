from types import SimpleNamespace

import pytest

from recyclink.services.geo import filter_by_radius, haversine_distance_km

NYC = (40.7128, -74.0060)


def test_distance_to_self_is_zero():
    assert haversine_distance_km(*NYC, *NYC) == 0


def test_tenth_of_a_degree_latitude_near_nyc():
    distance = haversine_distance_km(NYC[0], NYC[1], NYC[0] + 0.1, NYC[1])
    assert distance == pytest.approx(11.1, rel=0.01)


def test_distance_is_symmetric():
    london = (51.5074, -0.1278)
    assert haversine_distance_km(*NYC, *london) == pytest.approx(haversine_distance_km(*london, *NYC))
    assert haversine_distance_km(*NYC, *london) == pytest.approx(5570, rel=0.01)


def test_filter_by_radius_keeps_order_and_drops_missing_coordinates():
    listings = [
        {"id": "far", "lat": 41.5, "lng": -74.0},
        {"id": "near", "lat": 40.72, "lng": -74.01},
        {"id": "no-coords"},
        {"id": "half", "lat": 40.71, "lng": None},
        {"id": "nearer", "lat": 40.7128, "lng": -74.0061},
    ]

    selected = filter_by_radius(listings, *NYC, 5)

    assert [item["id"] for item in selected] == ["near", "nearer"]


def test_filter_by_radius_is_inclusive_and_accepts_objects():
    origin = SimpleNamespace(lat=0.0, lng=0.0)
    edge = SimpleNamespace(lat=0.1, lng=0.0)
    radius = haversine_distance_km(0.0, 0.0, 0.1, 0.0)

    assert filter_by_radius([origin, edge], 0.0, 0.0, radius) == [origin, edge]
    assert filter_by_radius([origin, edge], 0.0, 0.0, radius / 2) == [origin]
