"""
Census ACS economic-profile feed.

Builds per-state ACS 5-year source specs for tract-level data.
"""
import logging
from typing import Any, Dict, Optional

from hubzone.services.dataset_cache import SourceSpec
from hubzone.sources.census.metadata import ACS_VARIABLES, validate_acs_payload

logger = logging.getLogger(__name__)

ACS_SOURCE_ID = "census_acs"


class CensusAcsSource:
    """
    Source spec builder for the Census ACS API.

    Example:
        https://api.census.gov/data/2022/acs/acs5?get=NAME,B01001_001E,...&for=tract:*&in=state:06
    """

    def __init__(
        self,
        base_url: str = "https://api.census.gov/data",
        year: int = 2022,
        api_key: Optional[str] = None,
        survey: str = "acs5",
    ):
        self.base_url = base_url.rstrip("/")
        self.year = year
        self.api_key = api_key
        self.survey = survey

    def build_data_url(self) -> str:
        return f"{self.base_url}/{self.year}/acs/{self.survey}"

    def build_params(self, state_fips: str) -> Dict[str, Any]:
        params = {
            "get": ",".join(["NAME"] + list(ACS_VARIABLES)),
            "for": "tract:*",
            "in": f"state:{state_fips}",
        }
        if self.api_key:
            params["key"] = self.api_key
        return params

    def state_spec(self, state_fips: str) -> SourceSpec:
        """Tract-level ACS profiles for one state (non-critical)."""
        return SourceSpec(
            source_id=ACS_SOURCE_ID,
            url=self.build_data_url(),
            params=self.build_params(state_fips),
            fmt="json",
            state_fips=state_fips,
            critical=False,
            validator=validate_acs_payload,
        )
