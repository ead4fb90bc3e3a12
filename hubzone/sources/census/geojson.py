"""
Census TIGERweb boundary feed.

Tract boundaries are fetched per state and county boundaries with one
national query, both as GeoJSON in WGS84 (outSR=4326).
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from hubzone.core.api_errors import CorruptPayloadError
from hubzone.core.models import UnitType
from hubzone.services.dataset_cache import SourceSpec
from hubzone.services.geometry import BBox, SUPPORTED_TYPES, compute_bbox, geometry_hash

logger = logging.getLogger(__name__)

TRACT_SOURCE_ID = "tiger_tracts"
COUNTY_SOURCE_ID = "tiger_counties"

OUT_FIELDS = "GEOID,STATE,COUNTY,TRACT,NAME,AREALAND,AREAWATER,CENTLAT,CENTLON"


@dataclass
class BoundaryRecord:
    """One geographic unit's boundary as acquired from TIGERweb."""
    geoid: str
    unit_type: UnitType
    state_fips: str
    county_fips: str
    name: Optional[str]
    land_area: Optional[float]
    water_area: Optional[float]
    centroid_lat: Optional[float]
    centroid_lon: Optional[float]
    geometry: Dict[str, Any]
    bbox: BBox
    geometry_hash: str
    vintage: Optional[int] = None


class TigerBoundarySource:
    """
    Builds TIGERweb source specs for tract and county boundaries.

    TIGERweb REST API: https://tigerweb.geo.census.gov/arcgis/rest/services/
    """

    # Map geo levels to TIGERweb MapServer layers
    GEO_SERVICES = {
        UnitType.TRACT: "Tracts_Blocks/MapServer/0",
        UnitType.COUNTY: "State_County/MapServer/1",
    }

    def __init__(self, base_url: str, vintage: int = 2020):
        self.base_url = base_url.rstrip("/")
        self.vintage = vintage

    def _query_url(self, unit_type: UnitType) -> str:
        return f"{self.base_url}/{self.GEO_SERVICES[unit_type]}/query"

    def _params(self, where: str) -> Dict[str, Any]:
        return {
            "where": where,
            "outFields": OUT_FIELDS,
            "returnGeometry": "true",
            "outSR": "4326",
            "f": "geojson",
        }

    def tract_spec(self, state_fips: str) -> SourceSpec:
        """Per-state tract boundaries (non-critical: a failure skips the state)."""
        return SourceSpec(
            source_id=TRACT_SOURCE_ID,
            url=self._query_url(UnitType.TRACT),
            params=self._params(f"STATE='{state_fips}'"),
            fmt="geojson",
            state_fips=state_fips,
            critical=False,
            validator=validate_feature_collection,
        )

    def county_spec(self) -> SourceSpec:
        """National county boundaries (critical: a failure aborts the run)."""
        return SourceSpec(
            source_id=COUNTY_SOURCE_ID,
            url=self._query_url(UnitType.COUNTY),
            params=self._params("1=1"),
            fmt="geojson",
            critical=True,
            validator=validate_feature_collection,
        )


def _float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_feature_collection(body: bytes) -> None:
    """Raise CorruptPayloadError unless body is a GeoJSON FeatureCollection."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise CorruptPayloadError(f"Boundary payload is not valid JSON: {e}")
    if not isinstance(data, dict) or data.get("type") != "FeatureCollection":
        raise CorruptPayloadError("Boundary payload is not a GeoJSON FeatureCollection")
    if not isinstance(data.get("features"), list):
        raise CorruptPayloadError("Boundary payload has no features array")


def parse_boundaries(
    data: Dict[str, Any], unit_type: UnitType, vintage: Optional[int] = None
) -> List[BoundaryRecord]:
    """
    Parse a TIGERweb GeoJSON FeatureCollection into boundary records.

    Features without a supported geometry or without a GEOID are skipped.
    """
    records: List[BoundaryRecord] = []
    skipped = 0

    for feature in data.get("features", []):
        props = feature.get("properties") or {}
        geometry = feature.get("geometry") or {}
        geoid = str(props.get("GEOID") or "").strip()

        if not geoid or geometry.get("type") not in SUPPORTED_TYPES:
            skipped += 1
            continue

        try:
            bbox = compute_bbox(geometry)
        except ValueError:
            skipped += 1
            continue

        state = str(props.get("STATE") or geoid[:2]).zfill(2)
        county = str(props.get("COUNTY") or geoid[2:5]).zfill(3)

        records.append(BoundaryRecord(
            geoid=geoid,
            unit_type=unit_type,
            state_fips=state,
            county_fips=county,
            name=props.get("NAME"),
            land_area=_float(props.get("AREALAND")),
            water_area=_float(props.get("AREAWATER")),
            centroid_lat=_float(props.get("CENTLAT")),
            centroid_lon=_float(props.get("CENTLON")),
            geometry=geometry,
            bbox=bbox,
            geometry_hash=geometry_hash(geometry),
            vintage=vintage,
        ))

    if skipped:
        logger.warning(f"Skipped {skipped} {unit_type.value} features without usable geometry")
    logger.debug(f"Parsed {len(records)} {unit_type.value} boundaries")
    return records
