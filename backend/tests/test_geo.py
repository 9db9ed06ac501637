"""Tests for geometry helpers."""

import math

from livetrack.core.geo import (
    LatLng,
    LocalProjection,
    approx_sq_dist,
    bearing,
    format_latlng,
    haversine_m,
    interpolate,
    is_valid_coordinate,
    lerp_bearing,
    parse_latlng,
)


def test_interpolate_midpoint():
    """Test linear interpolation between two coordinates."""
    mid = interpolate(LatLng(56.0, 60.0), LatLng(57.0, 61.0), 0.5)
    assert mid == LatLng(56.5, 60.5)


def test_bearing_cardinal_directions():
    """Test bearings toward north, east, south and west."""
    origin = LatLng(56.8389, 60.6)
    assert abs(bearing(origin, LatLng(56.85, 60.6)) - 0) < 0.01
    assert abs(bearing(origin, LatLng(56.8389, 60.61)) - 90) < 0.1
    assert abs(bearing(origin, LatLng(56.82, 60.6)) - 180) < 0.01
    assert abs(bearing(origin, LatLng(56.8389, 60.59)) - 270) < 0.1


def test_lerp_bearing_takes_shortest_arc():
    """Test bearing interpolation across north."""
    assert lerp_bearing(350, 10, 0.5) == 0
    assert lerp_bearing(10, 350, 0.5) == 0
    assert abs(lerp_bearing(90, 180, 0.5) - 135) < 1e-9


def test_haversine_one_degree_latitude():
    """Test haversine distance for one degree of latitude."""
    d = haversine_m(LatLng(56.0, 60.0), LatLng(57.0, 60.0))
    assert 111_000 < d < 111_400


def test_approx_sq_dist_is_squared_degrees():
    """Test the squared-degree distance proxy."""
    assert math.isclose(approx_sq_dist(LatLng(1.0, 1.0), LatLng(1.003, 1.004)), 0.000025)


def test_invalid_coordinates():
    """Test zero, NaN and out-of-range coordinates."""
    assert is_valid_coordinate(56.8, 60.6)
    assert not is_valid_coordinate(None, 60.6)
    assert not is_valid_coordinate(0.0, 60.6)
    assert not is_valid_coordinate(56.8, 0.0)
    assert not is_valid_coordinate(float("nan"), 60.6)
    assert not is_valid_coordinate(56.8, float("inf"))
    assert not is_valid_coordinate(91.0, 60.6)
    assert not is_valid_coordinate(56.8, -181.0)


def test_parse_and_format_latlng():
    """Test "lat,lng" parsing and formatting."""
    assert parse_latlng("56.8389,60.6057") == LatLng(56.8389, 60.6057)
    assert parse_latlng(" 56.8389 , 60.6057 ") == LatLng(56.8389, 60.6057)
    assert parse_latlng("Lenina 1, Yekaterinburg, Russia") is None
    assert parse_latlng("0,0") is None
    assert format_latlng(LatLng(56.8389, 60.6057)) == "56.838900,60.605700"


def test_local_projection_round_trip_and_scale():
    """Test the local metric projection."""
    proj = LocalProjection(LatLng(56.8389, 60.59))
    x, y = proj.to_xy(LatLng(56.8389 + 0.001, 60.59))
    assert abs(x) < 1e-6
    assert abs(y - 111.32) < 0.01

    back = proj.to_latlng(*proj.to_xy(LatLng(56.84, 60.61)))
    assert math.isclose(back.lat, 56.84)
    assert math.isclose(back.lng, 60.61)
