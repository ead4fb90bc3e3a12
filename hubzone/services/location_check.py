"""
Point-in-HUBZone lookup against stored designations.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from hubzone.core.models import Designation, DesignationStatus, GeographicUnit
from hubzone.services.geometry import point_in_geometry

logger = logging.getLogger(__name__)


def check_location(
    db: Session, latitude: float, longitude: float, as_of: Optional[date] = None
) -> Dict[str, Any]:
    """
    Report whether a point lies in an active or in-grace HUBZone.

    Units are pre-filtered by their stored bounding box, then tested
    exactly against their polygon.
    """
    as_of = as_of or date.today()

    rows = (
        db.query(Designation, GeographicUnit)
        .join(GeographicUnit, GeographicUnit.geoid == Designation.geoid)
        .filter(
            GeographicUnit.bbox_minx <= longitude,
            GeographicUnit.bbox_maxx >= longitude,
            GeographicUnit.bbox_miny <= latitude,
            GeographicUnit.bbox_maxy >= latitude,
            or_(
                Designation.status == DesignationStatus.ACTIVE,
                and_(
                    Designation.status == DesignationStatus.REDESIGNATED,
                    Designation.grace_period_end_date >= as_of,
                ),
            ),
        )
        .all()
    )

    matches: List[Dict[str, Any]] = []
    for designation, unit in rows:
        if not point_in_geometry(longitude, latitude, unit.geometry):
            continue
        matches.append({
            "geoid": designation.geoid,
            "unit_type": getattr(unit.unit_type, "value", unit.unit_type),
            "designation_type": getattr(designation.designation_type, "value", designation.designation_type),
            "status": getattr(designation.status, "value", designation.status),
            "grace_period_end_date": (
                designation.grace_period_end_date.isoformat()
                if designation.grace_period_end_date else None
            ),
        })

    return {
        "latitude": latitude,
        "longitude": longitude,
        "is_in_hubzone": bool(matches),
        "designations": sorted(matches, key=lambda m: m["geoid"]),
    }
