"""
GeoJSON builders and fake source feeds shared by the tests.
"""
import asyncio
import json
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import httpx

from hubzone.sources.census.metadata import STATE_FIPS

FIXED_NOW = datetime(2026, 1, 1, 0, 0, 0)

ACS_HEADER = [
    "NAME", "B01001_001E", "B17001_001E", "B17001_002E", "B19013_001E", "B19113_001E",
    "state", "county", "tract",
]


def square(minx: float, miny: float, maxx: float, maxy: float) -> Dict:
    """GeoJSON Polygon for an axis-aligned box."""
    return {
        "type": "Polygon",
        "coordinates": [[
            [minx, miny], [maxx, miny], [maxx, maxy], [minx, maxy], [minx, miny],
        ]],
    }


def feature(geoid: str, geometry: Dict, name: str = "") -> Dict:
    return {
        "type": "Feature",
        "properties": {
            "GEOID": geoid,
            "STATE": geoid[:2],
            "COUNTY": geoid[2:5],
            "TRACT": geoid[5:] or None,
            "NAME": name or geoid,
            "AREALAND": 1000000,
            "AREAWATER": 0,
            "CENTLAT": None,
            "CENTLON": None,
        },
        "geometry": geometry,
    }


class FakeFeeds:
    """
    In-memory TIGERweb, ACS and SBA feeds behind an httpx.MockTransport.

    Defaults describe the District of Columbia with two tracts:
    11001000100 (30% poverty, qualifies) and 11001000200 (10% poverty,
    income at the area median, does not qualify), inside county 11001.
    """

    TRACT_100 = "11001000100"
    TRACT_200 = "11001000200"
    COUNTY = "11001"

    TRACT_100_BOX = (-77.05, 38.89, -77.03, 38.91)
    TRACT_200_BOX = (-77.03, 38.89, -77.01, 38.91)
    COUNTY_BOX = (-77.06, 38.88, -77.00, 38.92)

    def __init__(self):
        self.counties: List[Dict] = [feature(self.COUNTY, square(*self.COUNTY_BOX), "District of Columbia")]
        self.tracts: Dict[str, List[Dict]] = {
            "11": [
                feature(self.TRACT_100, square(*self.TRACT_100_BOX), "Census Tract 1"),
                feature(self.TRACT_200, square(*self.TRACT_200_BOX), "Census Tract 2"),
            ],
        }
        self.acs: Dict[str, List[List]] = {
            "11": [
                ["Census Tract 1", "2500", "1000", "300", "41000", "50000", "11", "001", "000100"],
                ["Census Tract 2", "3100", "1000", "100", "88000", "90000", "11", "001", "000200"],
            ],
        }
        self.sba: Dict[str, List[Dict]] = {}
        self.failures: Set[Tuple[str, Optional[str]]] = set()
        self.rate_limits: Dict[Tuple[str, Optional[str]], str] = {}
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    def fail(self, kind: str, state_fips: Optional[str] = None) -> None:
        """Make a feed answer HTTP 500 ('county', 'tract', 'acs' or 'sba')."""
        self.failures.add((kind, state_fips))

    def rate_limit(self, kind: str, state_fips: Optional[str] = None,
                   retry_after: str = "Wed, 21 Oct 2015 07:28:00 GMT") -> None:
        """Make a feed answer HTTP 429 with the given Retry-After header."""
        self.rate_limits[(kind, state_fips)] = retry_after

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.gate is not None:
            await self.gate.wait()

        path = request.url.path
        params = request.url.params

        if path.endswith("State_County/MapServer/1/query"):
            kind, state = "county", None
            body = {"type": "FeatureCollection", "features": self.counties}
        elif path.endswith("Tracts_Blocks/MapServer/0/query"):
            kind, state = "tract", params["where"].split("'")[1]
            body = {"type": "FeatureCollection", "features": self.tracts.get(state, [])}
        elif "/acs/acs5" in path:
            kind, state = "acs", params["in"].split(":")[1]
            body = [ACS_HEADER] + self.acs.get(state, [])
        elif path.endswith("/designations"):
            kind, state = "sba", STATE_FIPS[params["state"]]
            body = {"designations": self.sba.get(state, [])}
        else:
            return httpx.Response(404, text="unknown feed")

        self.calls.append(f"{kind}:{state or 'national'}")
        if (kind, state) in self.rate_limits:
            return httpx.Response(429, headers={"Retry-After": self.rate_limits[(kind, state)]}, text="slow down")
        if (kind, state) in self.failures:
            return httpx.Response(500, text="upstream unavailable")
        return httpx.Response(200, content=json.dumps(body).encode("utf-8"))
