"""
Unit tests for hubzone/services/geometry.py
"""
import pytest

from hubzone.services.geometry import (
    BoundaryIndex,
    compute_bbox,
    geometry_hash,
    point_in_geometry,
)
from tests.helpers import square


def _donut():
    return {
        "type": "Polygon",
        "coordinates": [
            [[0, 0], [10, 0], [10, 10], [0, 10], [0, 0]],
            [[4, 4], [6, 4], [6, 6], [4, 6], [4, 4]],
        ],
    }


@pytest.mark.unit
class TestPointInGeometry:

    def test_inside_and_outside_square(self):
        geometry = square(0, 0, 2, 2)
        assert point_in_geometry(1, 1, geometry) is True
        assert point_in_geometry(3, 1, geometry) is False
        assert point_in_geometry(1, -0.5, geometry) is False

    def test_hole_is_excluded(self):
        geometry = _donut()
        assert point_in_geometry(2, 2, geometry) is True
        assert point_in_geometry(5, 5, geometry) is False

    def test_multipolygon(self):
        geometry = {
            "type": "MultiPolygon",
            "coordinates": [
                square(0, 0, 1, 1)["coordinates"],
                square(5, 5, 6, 6)["coordinates"],
            ],
        }
        assert point_in_geometry(0.5, 0.5, geometry) is True
        assert point_in_geometry(5.5, 5.5, geometry) is True
        assert point_in_geometry(3, 3, geometry) is False

    def test_unsupported_type_raises(self):
        with pytest.raises(ValueError):
            point_in_geometry(0, 0, {"type": "Point", "coordinates": [0, 0]})

    def test_point_on_boundary_is_outside(self):
        geometry = square(0, 0, 2, 2)
        assert point_in_geometry(2, 1, geometry) is False
        assert point_in_geometry(0, 0, geometry) is False

    def test_self_intersecting_ring_is_repaired(self):
        bowtie = {
            "type": "Polygon",
            "coordinates": [[[0, 0], [2, 2], [2, 0], [0, 2], [0, 0]]],
        }
        assert point_in_geometry(0.3, 1, bowtie) is True
        assert point_in_geometry(1.7, 1, bowtie) is True
        assert point_in_geometry(1, 0.3, bowtie) is False


@pytest.mark.unit
class TestBBoxAndHash:

    def test_bbox_spans_every_polygon(self):
        geometry = {
            "type": "MultiPolygon",
            "coordinates": [
                square(-1, -2, 0, 0)["coordinates"],
                square(3, 1, 4, 5)["coordinates"],
            ],
        }
        assert compute_bbox(geometry) == (-1, -2, 4, 5)

    def test_empty_geometry_raises(self):
        with pytest.raises(ValueError):
            compute_bbox({"type": "Polygon", "coordinates": []})

    def test_hash_ignores_key_order(self):
        a = {"type": "Polygon", "coordinates": square(0, 0, 1, 1)["coordinates"]}
        b = {"coordinates": square(0, 0, 1, 1)["coordinates"], "type": "Polygon"}
        assert geometry_hash(a) == geometry_hash(b)
        assert geometry_hash(a) != geometry_hash(square(0, 0, 1, 2))


@pytest.mark.unit
class TestBoundaryIndex:

    def test_containing_applies_exact_test(self):
        index = BoundaryIndex()
        index.add("A", square(-77.05, 38.89, -77.03, 38.91))
        index.add("B", _donut())

        assert len(index) == 2
        assert "A" in index
        assert index.containing(-77.04, 38.90) == ["A"]
        assert index.candidates(5, 5) == ["B"]
        assert index.containing(5, 5) == []

    def test_overlapping_units_are_sorted(self):
        index = BoundaryIndex()
        index.add("tract", square(0, 0, 1, 1))
        index.add("county", square(-1, -1, 2, 2))

        assert index.containing(0.5, 0.5) == ["county", "tract"]

    def test_containing_limited_to_subset(self):
        index = BoundaryIndex()
        index.add("tract", square(0, 0, 1, 1))
        index.add("county", square(-1, -1, 2, 2))

        assert index.containing(0.5, 0.5, {"tract"}) == ["tract"]
        assert index.containing(0.5, 0.5, ["county"]) == ["county"]
        assert index.containing(0.5, 0.5, set()) == []

    def test_large_unit_found_anywhere_inside(self):
        index = BoundaryIndex()
        index.add("state", square(-80, 35, -75, 40))

        assert index.containing(-77.5, 37.3) == ["state"]
        assert index.containing(-74.9, 37.3) == []
