"""
SBA HUBZone designation feed.

The feed is queried per state:

    GET {endpoint}/designations?state=CA
    {"designations": [{"geoid": "06037206300", "type": "qct", "status": "active",
                       "designation_date": "2023-01-01", "expiration_date": null}, ...]}

Type and status strings are normalized through fixed mapping tables.
"""
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from hubzone.core.api_errors import CorruptPayloadError
from hubzone.core.models import DesignationStatus, DesignationType
from hubzone.services.dataset_cache import SourceSpec
from hubzone.sources.census.metadata import FIPS_TO_STATE

logger = logging.getLogger(__name__)

SBA_SOURCE_ID = "sba_feed"

DESIGNATION_TYPE_MAP = {
    "qct": DesignationType.QUALIFIED_CENSUS_TRACT,
    "qualified_census_tract": DesignationType.QUALIFIED_CENSUS_TRACT,
    "qnmc": DesignationType.QUALIFIED_NON_METRO_COUNTY,
    "qualified_non_metro_county": DesignationType.QUALIFIED_NON_METRO_COUNTY,
    "indian_lands": DesignationType.INDIAN_LANDS,
    "base_closure": DesignationType.BASE_CLOSURE_AREA,
    "base_closure_area": DesignationType.BASE_CLOSURE_AREA,
    "governor_designated": DesignationType.GOVERNOR_DESIGNATED,
    "redesignated": DesignationType.REDESIGNATED,
}

DESIGNATION_STATUS_MAP = {
    "active": DesignationStatus.ACTIVE,
    "expired": DesignationStatus.EXPIRED,
    "pending": DesignationStatus.PENDING,
    "redesignated": DesignationStatus.REDESIGNATED,
}


def map_designation_type(value: Optional[str]) -> DesignationType:
    """Normalize a feed type string; unknown types are qualified census tracts."""
    return DESIGNATION_TYPE_MAP.get(
        (value or "").strip().lower(), DesignationType.QUALIFIED_CENSUS_TRACT
    )


def map_designation_status(value: Optional[str]) -> DesignationStatus:
    """Normalize a feed status string; unknown statuses are active."""
    return DESIGNATION_STATUS_MAP.get((value or "").strip().lower(), DesignationStatus.ACTIVE)


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            return None


@dataclass
class FeedDesignation:
    """One designation entry from the SBA feed, normalized."""
    geoid: str
    state_fips: str
    county_fips: Optional[str]
    designation_type: DesignationType
    status: DesignationStatus
    designation_date: Optional[date]
    expiration_date: Optional[date] = None

    def is_current(self, as_of: date) -> bool:
        """Active and not expired as of the given date."""
        if self.status != DesignationStatus.ACTIVE:
            return False
        return self.expiration_date is None or self.expiration_date > as_of


class SbaDesignationSource:
    """Source spec builder for the SBA designation feed."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint.rstrip("/")

    def state_spec(self, state_fips: str) -> SourceSpec:
        """Designations for one state (non-critical)."""
        return SourceSpec(
            source_id=SBA_SOURCE_ID,
            url=f"{self.endpoint}/designations",
            params={"state": FIPS_TO_STATE.get(state_fips, state_fips)},
            fmt="json",
            state_fips=state_fips,
            critical=False,
            validator=validate_designation_payload,
        )


def validate_designation_payload(body: bytes) -> None:
    """Raise CorruptPayloadError unless body carries a designations array."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise CorruptPayloadError(f"SBA payload is not valid JSON: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("designations"), list):
        raise CorruptPayloadError("SBA payload has no designations array")


def parse_designations(data: Dict[str, Any]) -> Dict[str, FeedDesignation]:
    """
    Parse and deduplicate a feed payload.

    Entries without a GEOID are dropped. When a GEOID appears more than once
    the entry with the latest designation date wins.

    Returns:
        Mapping of GEOID to FeedDesignation
    """
    by_geoid: Dict[str, FeedDesignation] = {}
    dropped = 0

    for item in data.get("designations", []):
        geoid = str(item.get("geoid") or "").strip()
        if not geoid:
            dropped += 1
            continue

        entry = FeedDesignation(
            geoid=geoid,
            state_fips=geoid[:2],
            county_fips=str(item["county"]).zfill(3)[-3:] if item.get("county") else geoid[2:5] or None,
            designation_type=map_designation_type(item.get("type")),
            status=map_designation_status(item.get("status")),
            designation_date=_parse_date(item.get("designation_date")),
            expiration_date=_parse_date(item.get("expiration_date")),
        )

        existing = by_geoid.get(geoid)
        if existing is None or (entry.designation_date or date.min) > (existing.designation_date or date.min):
            by_geoid[geoid] = entry

    if dropped:
        logger.warning(f"Dropped {dropped} SBA feed entries without a GEOID")
    return by_geoid


def current_entries(entries: Dict[str, FeedDesignation], as_of: date) -> List[FeedDesignation]:
    """Feed entries that can stand as candidates on the given date."""
    return [
        e for e in entries.values()
        if e.is_current(as_of) and e.designation_type != DesignationType.REDESIGNATED
    ]
