"""
Qualification evaluator.

Applies the SBA qualified-census-tract thresholds to ACS economic profiles.
Pure functions: no I/O, no clock.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from hubzone.core.errors import EvaluationDataMissing
from hubzone.core.models import DesignationType
from hubzone.sources.census.metadata import EconomicProfile

logger = logging.getLogger(__name__)

# Inclusive thresholds
POVERTY_RATE_THRESHOLD = 25.0
INCOME_RATIO_THRESHOLD = 0.80


@dataclass(frozen=True)
class QualificationResult:
    """Outcome of evaluating one tract, with the ratios behind it."""
    geoid: str
    poverty_rate: float
    income_ratio: Optional[float]
    qualifies_by_poverty: bool
    qualifies_by_income: bool

    @property
    def is_qualified(self) -> bool:
        return self.qualifies_by_poverty or self.qualifies_by_income

    @property
    def designation_type(self) -> Optional[DesignationType]:
        return DesignationType.QUALIFIED_CENSUS_TRACT if self.is_qualified else None

    def to_dict(self) -> Dict[str, object]:
        return {
            "geoid": self.geoid,
            "poverty_rate": self.poverty_rate,
            "income_ratio": self.income_ratio,
            "qualifies_by_poverty": self.qualifies_by_poverty,
            "qualifies_by_income": self.qualifies_by_income,
            "is_qualified": self.is_qualified,
        }


def evaluate(profile: EconomicProfile) -> QualificationResult:
    """
    Evaluate one economic profile.

    A tract qualifies by poverty when its poverty rate is at least 25.0%,
    and by income when its median family income is at most 80% of the
    area median income. Either condition qualifies it.

    Raises:
        EvaluationDataMissing: If the profile has neither a poverty universe
            nor the incomes needed for the income test
    """
    income_ratio = None
    if profile.median_family_income and profile.area_median_income:
        income_ratio = profile.median_family_income / profile.area_median_income

    if not profile.poverty_universe and income_ratio is None:
        raise EvaluationDataMissing(
            f"No poverty or income data for tract {profile.geoid}", geoid=profile.geoid
        )

    poverty_rate = profile.poverty_rate
    return QualificationResult(
        geoid=profile.geoid,
        poverty_rate=poverty_rate,
        income_ratio=income_ratio,
        qualifies_by_poverty=bool(profile.poverty_universe) and poverty_rate >= POVERTY_RATE_THRESHOLD,
        qualifies_by_income=income_ratio is not None and income_ratio <= INCOME_RATIO_THRESHOLD,
    )


def evaluate_units(
    geoids: Iterable[str], profiles: Dict[str, EconomicProfile]
) -> Tuple[Dict[str, QualificationResult], List[EvaluationDataMissing]]:
    """
    Evaluate every tract in `geoids`.

    Tracts without a usable profile are skipped and returned as
    EvaluationDataMissing warnings.
    """
    results: Dict[str, QualificationResult] = {}
    missing: List[EvaluationDataMissing] = []

    for geoid in geoids:
        profile = profiles.get(geoid)
        if profile is None:
            missing.append(EvaluationDataMissing(
                f"No economic profile for tract {geoid}", geoid=geoid
            ))
            continue
        try:
            results[geoid] = evaluate(profile)
        except EvaluationDataMissing as e:
            missing.append(e)

    qualified = sum(1 for r in results.values() if r.is_qualified)
    logger.info(
        f"Evaluated {len(results)} tracts: {qualified} qualified, {len(missing)} without data"
    )
    return results, missing
