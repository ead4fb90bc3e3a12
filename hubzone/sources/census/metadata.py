"""
Census reference data and ACS payload parsing.

Holds the state FIPS table, the ACS variables used for HUBZone
qualification, and the parser turning an ACS API response into
per-tract economic profiles.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from hubzone.core.api_errors import CorruptPayloadError

logger = logging.getLogger(__name__)


# State abbreviation -> FIPS code (50 states, DC and territories)
STATE_FIPS = {
    "AL": "01",
    "AK": "02",
    "AZ": "04",
    "AR": "05",
    "CA": "06",
    "CO": "08",
    "CT": "09",
    "DE": "10",
    "DC": "11",
    "FL": "12",
    "GA": "13",
    "HI": "15",
    "ID": "16",
    "IL": "17",
    "IN": "18",
    "IA": "19",
    "KS": "20",
    "KY": "21",
    "LA": "22",
    "ME": "23",
    "MD": "24",
    "MA": "25",
    "MI": "26",
    "MN": "27",
    "MS": "28",
    "MO": "29",
    "MT": "30",
    "NE": "31",
    "NV": "32",
    "NH": "33",
    "NJ": "34",
    "NM": "35",
    "NY": "36",
    "NC": "37",
    "ND": "38",
    "OH": "39",
    "OK": "40",
    "OR": "41",
    "PA": "42",
    "RI": "44",
    "SC": "45",
    "SD": "46",
    "TN": "47",
    "TX": "48",
    "UT": "49",
    "VT": "50",
    "VA": "51",
    "WA": "53",
    "WV": "54",
    "WI": "55",
    "WY": "56",
    "AS": "60",
    "GU": "66",
    "MP": "69",
    "PR": "72",
    "VI": "78",
}

FIPS_TO_STATE = {fips: abbr for abbr, fips in STATE_FIPS.items()}

ALL_STATE_FIPS = sorted(STATE_FIPS.values())


# ACS 5-year variables used for qualification
ACS_VARIABLES = {
    "B01001_001E": "total_population",
    "B17001_001E": "poverty_universe",
    "B17001_002E": "below_poverty",
    "B19013_001E": "median_household_income",
    "B19113_001E": "median_family_income",
}


def normalize_state_fips(value: str) -> str:
    """
    Normalize a state identifier to its 2-digit FIPS code.

    Accepts FIPS codes ("6", "06") or postal abbreviations ("CA").

    Raises:
        ValueError: If the value is not a known state or territory
    """
    v = str(value).strip().upper()
    if v in STATE_FIPS:
        return STATE_FIPS[v]
    if v.isdigit():
        v = v.zfill(2)
        if v in FIPS_TO_STATE:
            return v
    raise ValueError(f"Unknown state FIPS code or abbreviation: {value}")


@dataclass
class EconomicProfile:
    """ACS economic profile for one tract (one vintage)."""
    geoid: str
    state_fips: str
    county_fips: str
    total_population: int
    poverty_universe: int
    below_poverty: int
    median_household_income: Optional[float]
    median_family_income: Optional[float]
    area_median_income: Optional[float] = None
    vintage: Optional[int] = None

    @property
    def poverty_rate(self) -> float:
        """Percent of the poverty universe below the poverty line."""
        if not self.poverty_universe:
            return 0.0
        return self.below_poverty / self.poverty_universe * 100


def _to_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return 0
    # Census sentinel values (-666666666 etc.) mean "not available"
    return n if n >= 0 else 0


def _to_income(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


def _median(values: List[float]) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


def parse_acs_response(
    data: List[List[Any]], vintage: Optional[int] = None
) -> Dict[str, EconomicProfile]:
    """
    Parse an ACS tract-level response into economic profiles.

    The Census API returns a header row followed by data rows. Area median
    income for each tract is the median of the positive median family
    incomes across the tracts of its county.

    Args:
        data: Raw JSON array-of-arrays
        vintage: ACS year for the profiles

    Returns:
        Mapping of 11-digit GEOID to EconomicProfile

    Raises:
        CorruptPayloadError: If the header lacks required columns
    """
    if not data or not isinstance(data, list) or not isinstance(data[0], list):
        raise CorruptPayloadError("ACS response is not a header + rows array")

    header = data[0]
    required = list(ACS_VARIABLES) + ["state", "county", "tract"]
    missing = [col for col in required if col not in header]
    if missing:
        raise CorruptPayloadError(f"ACS response missing columns: {missing}")

    idx = {col: header.index(col) for col in required}
    profiles: Dict[str, EconomicProfile] = {}

    for row in data[1:]:
        if len(row) < len(header):
            logger.warning(f"Skipping short ACS row: {row}")
            continue
        state = str(row[idx["state"]]).zfill(2)
        county = str(row[idx["county"]]).zfill(3)
        tract = str(row[idx["tract"]]).zfill(6)
        geoid = f"{state}{county}{tract}"

        profiles[geoid] = EconomicProfile(
            geoid=geoid,
            state_fips=state,
            county_fips=county,
            total_population=_to_int(row[idx["B01001_001E"]]),
            poverty_universe=_to_int(row[idx["B17001_001E"]]),
            below_poverty=_to_int(row[idx["B17001_002E"]]),
            median_household_income=_to_income(row[idx["B19013_001E"]]),
            median_family_income=_to_income(row[idx["B19113_001E"]]),
            vintage=vintage,
        )

    by_county: Dict[str, List[float]] = {}
    for profile in profiles.values():
        if profile.median_family_income:
            key = profile.state_fips + profile.county_fips
            by_county.setdefault(key, []).append(profile.median_family_income)

    for profile in profiles.values():
        profile.area_median_income = _median(
            by_county.get(profile.state_fips + profile.county_fips, [])
        )

    logger.debug(f"Parsed {len(profiles)} ACS tract profiles")
    return profiles


def validate_acs_payload(body: bytes) -> None:
    """Raise CorruptPayloadError unless body is a parseable ACS response."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise CorruptPayloadError(f"ACS payload is not valid JSON: {e}")
    parse_acs_response(data)
