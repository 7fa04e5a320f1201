"""Tests for common/geo.py: distances, bearings and region cells."""
from __future__ import annotations

import pytest

from common.geo import angle_between_deg, bearing_deg, haversine_distance, is_ahead, region_cell


class TestHaversine:
    def test_zero_for_same_point(self):
        assert haversine_distance(37.7749, -122.4194, 37.7749, -122.4194) == 0

    def test_proximity_window_is_about_eleven_meters(self):
        d = haversine_distance(37.7749, -122.4194, 37.7750, -122.4194)
        assert 10.5 < d < 11.6

    def test_one_degree_latitude(self):
        assert haversine_distance(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)


class TestBearing:
    def test_due_north(self):
        assert bearing_deg(0, 0, 1, 0) == pytest.approx(0)

    def test_due_east(self):
        assert bearing_deg(0, 0, 0, 1) == pytest.approx(90)

    def test_due_west_is_positive(self):
        assert bearing_deg(0, 0, 0, -1) == pytest.approx(270)

    def test_angle_between_wraps(self):
        assert angle_between_deg(350, 10) == pytest.approx(20)
        assert angle_between_deg(10, 350) == pytest.approx(20)
        assert angle_between_deg(0, 180) == pytest.approx(180)


class TestIsAhead:
    def test_target_in_front(self):
        assert is_ahead(59.91, 10.75, 0, 59.92, 10.75)

    def test_target_behind(self):
        assert not is_ahead(59.91, 10.75, 0, 59.90, 10.75)

    def test_tolerance(self):
        # Target to the east while heading north
        assert not is_ahead(0, 0, 0, 0, 1, tolerance_deg=45)
        assert is_ahead(0, 0, 0, 0, 1, tolerance_deg=90)


class TestRegionCell:
    def test_floors_positive(self):
        assert region_cell(37.7749, 122.4194) == (37, 122)

    def test_floors_negative(self):
        assert region_cell(37.7749, -122.4194) == (37, -123)

    def test_custom_cell_size(self):
        assert region_cell(37.7749, -122.4194, cell_degrees=0.5) == (75, -245)
