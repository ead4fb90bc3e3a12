"""
Affected-business resolver.

Works out which registered businesses change HUBZone status because of a
changeset, by testing principal-office coordinates against the boundaries
of the changed units. Produces records only; the hand-off to the
notification service is the job engine's decision.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Set, Tuple

from hubzone.core.errors import GeospatialResolutionError
from hubzone.core.models import BusinessChangeType
from hubzone.services.designation_diff import Changeset, DesignationChange
from hubzone.services.geometry import BoundaryIndex

logger = logging.getLogger(__name__)

IN_HUBZONE = "in_hubzone"
NOT_IN_HUBZONE = "not_in_hubzone"


@dataclass(frozen=True)
class BusinessLocation:
    """Principal-office location of a registered business."""
    business_id: str
    name: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    state_fips: Optional[str] = None

    @classmethod
    def from_model(cls, row) -> "BusinessLocation":
        return cls(
            business_id=row.id,
            name=row.name,
            latitude=row.principal_office_latitude,
            longitude=row.principal_office_longitude,
            state_fips=row.state_fips,
        )


@dataclass
class AffectedChange:
    """A business whose HUBZone status moves in this run."""
    business_id: str
    business_name: Optional[str]
    previous_status: str
    new_status: str
    change_type: BusinessChangeType
    geoid: str
    grace_period_end_date: Optional[date] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "business_id": self.business_id,
            "business_name": self.business_name,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "change_type": self.change_type.value,
            "geoid": self.geoid,
            "grace_period_end_date": (
                self.grace_period_end_date.isoformat() if self.grace_period_end_date else None
            ),
        }


def resolve(
    changeset: Changeset,
    businesses: Iterable[BusinessLocation],
    index: BoundaryIndex,
    active_before: Set[str],
) -> Tuple[List[AffectedChange], List[GeospatialResolutionError]]:
    """
    Resolve business status transitions caused by a changeset.

    Only new, expired and redesignated units are considered; updated units
    stay active and move nobody.

    Args:
        changeset: Reconciled changes
        businesses: Business locations in the scoped states
        index: Boundaries of every unit active before or after the run
        active_before: GEOIDs with an active designation before the run

    Returns:
        (affected changes, per-business resolution warnings)
    """
    new: Dict[str, DesignationChange] = {c.geoid: c for c in changeset.new}
    expired: Dict[str, DesignationChange] = {c.geoid: c for c in changeset.expired}
    redesignated: Dict[str, DesignationChange] = {c.geoid: c for c in changeset.redesignated}

    changed = set(new) | set(expired) | set(redesignated)
    if not changed:
        return [], []

    missing_boundaries = sorted(g for g in changed if g not in index)
    if missing_boundaries:
        logger.warning(
            f"No boundary for {len(missing_boundaries)} changed units; "
            f"businesses in them cannot be resolved (first: {missing_boundaries[0]})"
        )

    active_after = (active_before - set(expired) - set(redesignated)) | set(new)
    relevant = active_before | set(new)

    affected: List[AffectedChange] = []
    warnings: List[GeospatialResolutionError] = []
    checked = 0

    for business in businesses:
        if business.latitude is None or business.longitude is None:
            warnings.append(GeospatialResolutionError(
                business.business_id, "Principal office has no coordinates"
            ))
            continue

        lon, lat = business.longitude, business.latitude
        if not (-180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0):
            warnings.append(GeospatialResolutionError(
                business.business_id, f"Coordinates out of range: ({lat}, {lon})"
            ))
            continue

        # Fast path: only businesses inside a changed unit can move
        if not index.containing(lon, lat, changed):
            continue
        checked += 1

        containing = index.containing(lon, lat, relevant)
        was_in = [g for g in containing if g in active_before]
        now_in = [g for g in containing if g in active_after]

        change = None
        if not was_in and now_in:
            gained = [g for g in now_in if g in new]
            if gained:
                change = AffectedChange(
                    business_id=business.business_id,
                    business_name=business.name,
                    previous_status=NOT_IN_HUBZONE,
                    new_status=IN_HUBZONE,
                    change_type=BusinessChangeType.GAINED_HUBZONE,
                    geoid=gained[0],
                )
        elif was_in and not now_in:
            in_grace = [g for g in was_in if g in redesignated]
            lapsed = [g for g in was_in if g in expired]
            if in_grace:
                change = AffectedChange(
                    business_id=business.business_id,
                    business_name=business.name,
                    previous_status=IN_HUBZONE,
                    new_status=IN_HUBZONE,
                    change_type=BusinessChangeType.HUBZONE_REDESIGNATED,
                    geoid=in_grace[0],
                    grace_period_end_date=redesignated[in_grace[0]].grace_period_end_date,
                )
            elif lapsed:
                change = AffectedChange(
                    business_id=business.business_id,
                    business_name=business.name,
                    previous_status=IN_HUBZONE,
                    new_status=NOT_IN_HUBZONE,
                    change_type=BusinessChangeType.LOST_HUBZONE,
                    geoid=lapsed[0],
                )

        if change is not None:
            affected.append(change)

    logger.info(
        f"Resolved {checked} businesses inside changed units: "
        f"{len(affected)} affected, {len(warnings)} unresolved"
    )
    return affected, warnings
