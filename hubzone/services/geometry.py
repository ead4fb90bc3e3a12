"""
Geometry helpers for GeoJSON Polygon / MultiPolygon boundaries.

Coordinates are (lon, lat) as in GeoJSON. Boundaries are turned into
shapely geometries; holes in a polygon exclude their interior and points
exactly on a boundary line are outside.
"""
import hashlib
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shapely.errors import GEOSException
from shapely.geometry import Point, shape
from shapely.geometry.base import BaseGeometry
from shapely.prepared import prep
from shapely.strtree import STRtree
from shapely.validation import make_valid

logger = logging.getLogger(__name__)

BBox = Tuple[float, float, float, float]  # minx, miny, maxx, maxy

SUPPORTED_TYPES = ("Polygon", "MultiPolygon")


def to_shape(geometry: Dict[str, Any]) -> BaseGeometry:
    """
    Build a shapely geometry from a GeoJSON Polygon or MultiPolygon.

    Invalid rings (self-intersections from generalized boundaries) are
    repaired with make_valid.

    Raises:
        ValueError: If the type is unsupported or the geometry is empty
    """
    gtype = geometry.get("type")
    if gtype not in SUPPORTED_TYPES:
        raise ValueError(f"Unsupported geometry type: {gtype}")

    if not geometry.get("coordinates"):
        raise ValueError("Geometry has no coordinates")

    try:
        geom = shape(geometry)
    except (GEOSException, TypeError, ValueError) as e:
        raise ValueError(f"Malformed {gtype} geometry: {e}") from e
    if geom.is_empty:
        raise ValueError("Geometry has no coordinates")
    if not geom.is_valid:
        logger.debug("Repairing invalid boundary geometry")
        geom = make_valid(geom)
    return geom


def compute_bbox(geometry: Dict[str, Any]) -> BBox:
    """Bounding box over every ring of the geometry."""
    return tuple(to_shape(geometry).bounds)


def point_in_geometry(lon: float, lat: float, geometry: Dict[str, Any]) -> bool:
    """Exact containment test of a point against a Polygon or MultiPolygon."""
    return to_shape(geometry).contains(Point(lon, lat))


def geometry_hash(geometry: Dict[str, Any]) -> str:
    """Stable sha256 of a geometry's canonical JSON form."""
    canonical = json.dumps(geometry, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class BoundaryIndex:
    """
    Spatial index over unit boundaries.

    An STRtree over the unit geometries serves as the coarse bounding-box
    filter; `containing` then applies the exact test with prepared
    geometries. The tree is rebuilt on the first lookup after an add.
    """

    def __init__(self):
        self._geoids: List[str] = []
        self._shapes: Dict[str, BaseGeometry] = {}
        self._prepared: Dict[str, Any] = {}
        self._tree: Optional[STRtree] = None

    def __len__(self) -> int:
        return len(self._shapes)

    def __contains__(self, geoid: str) -> bool:
        return geoid in self._shapes

    def add(self, geoid: str, geometry: Dict[str, Any]) -> None:
        geom = to_shape(geometry)
        if geoid not in self._shapes:
            self._geoids.append(geoid)
        self._shapes[geoid] = geom
        self._prepared[geoid] = prep(geom)
        self._tree = None

    def _ensure_tree(self) -> STRtree:
        if self._tree is None:
            self._tree = STRtree([self._shapes[g] for g in self._geoids])
        return self._tree

    def candidates(self, lon: float, lat: float) -> List[str]:
        """GEOIDs whose bounding box contains the point."""
        if not self._geoids:
            return []
        hits = self._ensure_tree().query(Point(lon, lat))
        return sorted(self._geoids[int(i)] for i in hits)

    def containing(self, lon: float, lat: float, geoids: Optional[Iterable[str]] = None) -> List[str]:
        """GEOIDs whose polygon contains the point, optionally limited to a subset."""
        allowed = geoids
        if allowed is not None and not isinstance(allowed, (set, frozenset)):
            allowed = set(allowed)
        point = Point(lon, lat)
        result = []
        for geoid in self.candidates(lon, lat):
            if allowed is not None and geoid not in allowed:
                continue
            if self._prepared[geoid].contains(point):
                result.append(geoid)
        return result
