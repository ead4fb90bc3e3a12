"""
Designation diff engine.

Compares candidate designations against the currently active designation
set and classifies every unit as new, updated, expired, redesignated or
unchanged. Deterministic and side-effect free: persistence is the job
engine's business.
"""
import calendar
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from hubzone.core.config import MissingGracePeriodConfigError
from hubzone.core.errors import ReconciliationConflict
from hubzone.core.models import DesignationType
from hubzone.services.qualification import QualificationResult

logger = logging.getLogger(__name__)

CHANGE_NEW = "new"
CHANGE_UPDATED = "updated"
CHANGE_EXPIRED = "expired"
CHANGE_REDESIGNATED = "redesignated"

# Types whose loss of qualification starts a grace period instead of expiring
GRACE_PERIOD_TYPES = frozenset({
    DesignationType.QUALIFIED_CENSUS_TRACT,
    DesignationType.QUALIFIED_NON_METRO_COUNTY,
})

# Lower rank wins; types absent here cannot be ordered by precedence
STATUTORY_PRECEDENCE = {
    DesignationType.QUALIFIED_CENSUS_TRACT: 0,
    DesignationType.QUALIFIED_NON_METRO_COUNTY: 1,
    DesignationType.INDIAN_LANDS: 2,
}


def add_months(d: date, months: int) -> date:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass(frozen=True)
class Candidate:
    """A designation a unit qualifies for in this run."""
    geoid: str
    state_fips: str
    county_fips: Optional[str]
    designation_type: DesignationType
    source_dataset: str
    expiration_date: Optional[date] = None
    qualification: Optional[QualificationResult] = None


@dataclass(frozen=True)
class CurrentDesignation:
    """Snapshot of a stored active designation."""
    geoid: str
    state_fips: str
    county_fips: Optional[str]
    designation_type: DesignationType
    designation_date: date
    source_dataset: str
    expiration_date: Optional[date] = None

    @classmethod
    def from_model(cls, row) -> "CurrentDesignation":
        return cls(
            geoid=row.geoid,
            state_fips=row.state_fips,
            county_fips=row.county_fips,
            designation_type=DesignationType(row.designation_type),
            designation_date=row.designation_date,
            source_dataset=row.source_dataset,
            expiration_date=row.expiration_date,
        )


@dataclass
class DesignationChange:
    """One classified change to a unit's designation."""
    geoid: str
    state_fips: str
    county_fips: Optional[str]
    change: str
    designation_type: DesignationType
    previous_type: Optional[DesignationType] = None
    designation_date: Optional[date] = None
    expiration_date: Optional[date] = None
    grace_period_end_date: Optional[date] = None
    source_dataset: Optional[str] = None
    reason: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "geoid": self.geoid,
            "state_fips": self.state_fips,
            "change": self.change,
            "designation_type": self.designation_type.value,
            "previous_type": self.previous_type.value if self.previous_type else None,
            "designation_date": self.designation_date.isoformat() if self.designation_date else None,
            "expiration_date": self.expiration_date.isoformat() if self.expiration_date else None,
            "grace_period_end_date": (
                self.grace_period_end_date.isoformat() if self.grace_period_end_date else None
            ),
            "source_dataset": self.source_dataset,
            "reason": self.reason,
        }


@dataclass
class Changeset:
    """Classified result of one reconciliation."""
    new: List[DesignationChange] = field(default_factory=list)
    updated: List[DesignationChange] = field(default_factory=list)
    expired: List[DesignationChange] = field(default_factory=list)
    redesignated: List[DesignationChange] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    conflicts: List[ReconciliationConflict] = field(default_factory=list)

    @property
    def changes(self) -> List[DesignationChange]:
        return self.new + self.updated + self.expired + self.redesignated

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def merge(self, other: "Changeset") -> "Changeset":
        """Combine two changesets over disjoint sets of units."""
        return Changeset(
            new=self.new + other.new,
            updated=self.updated + other.updated,
            expired=self.expired + other.expired,
            redesignated=self.redesignated + other.redesignated,
            unchanged=self.unchanged + other.unchanged,
            skipped=self.skipped + other.skipped,
            conflicts=self.conflicts + other.conflicts,
        )

    def counts(self) -> Dict[str, int]:
        return {
            "new": len(self.new),
            "updated": len(self.updated),
            "expired": len(self.expired),
            "redesignated": len(self.redesignated),
            "unchanged": len(self.unchanged),
            "skipped": len(self.skipped),
            "conflicts": len(self.conflicts),
        }

    def summary(self) -> Dict[str, Any]:
        """JSON-able description stored on the execution record."""
        return {
            "counts": self.counts(),
            "new": [c.to_dict() for c in self.new],
            "updated": [c.to_dict() for c in self.updated],
            "expired": [c.to_dict() for c in self.expired],
            "redesignated": [c.to_dict() for c in self.redesignated],
            "skipped": list(self.skipped),
            "conflicts": [c.geoid for c in self.conflicts],
        }


# ---------------------------------------------------------------------------
# Tie-break policy
# ---------------------------------------------------------------------------
# Each rule narrows a list of candidates for one unit; a rule that cannot
# discriminate returns the list unchanged. Rules never return an empty list.

TieBreakRule = Callable[[List[Candidate], Optional[CurrentDesignation]], List[Candidate]]


def prefer_no_expiration(candidates, current):
    """Candidates without an expiration date beat those with one."""
    open_ended = [c for c in candidates if c.expiration_date is None]
    return open_ended or candidates


def prefer_type_on_record(candidates, current):
    """The type already on record beats a change of type."""
    if current is None:
        return candidates
    same = [c for c in candidates if c.designation_type == current.designation_type]
    return same or candidates


def prefer_statutory_precedence(candidates, current):
    """QCT beats QNMC beats Indian lands; applies only when every remaining type is ranked."""
    if any(c.designation_type not in STATUTORY_PRECEDENCE for c in candidates):
        return candidates
    best = min(STATUTORY_PRECEDENCE[c.designation_type] for c in candidates)
    return [c for c in candidates if STATUTORY_PRECEDENCE[c.designation_type] == best]


DEFAULT_TIE_BREAK_RULES: Sequence[TieBreakRule] = (
    prefer_no_expiration,
    prefer_type_on_record,
    prefer_statutory_precedence,
)


def choose_candidate(
    geoid: str,
    candidates: List[Candidate],
    current: Optional[CurrentDesignation],
    rules: Sequence[TieBreakRule] = DEFAULT_TIE_BREAK_RULES,
) -> Candidate:
    """
    Pick the one candidate a unit is designated under.

    Raises:
        ReconciliationConflict: If distinct types remain after every rule
    """
    remaining = list(candidates)
    for rule in rules:
        if len({c.designation_type for c in remaining}) <= 1:
            break
        remaining = rule(remaining, current) or remaining

    types = {c.designation_type for c in remaining}
    if len(types) > 1:
        raise ReconciliationConflict(geoid, types)

    # Same type from several sources: open-ended first, then latest expiry
    return sorted(
        remaining,
        key=lambda c: (c.expiration_date is not None, -(c.expiration_date or date.max).toordinal(), c.source_dataset),
    )[0]


def reconcile(
    candidates: Dict[str, List[Candidate]],
    current: Dict[str, CurrentDesignation],
    run_date: date,
    grace_period_months: Optional[int] = None,
    rules: Sequence[TieBreakRule] = DEFAULT_TIE_BREAK_RULES,
    skipped: Optional[Set[str]] = None,
) -> Changeset:
    """
    Classify every unit in the union of the candidate and current sets.

    Args:
        candidates: GEOID -> candidate designations for this run
        current: GEOID -> currently active designation
        run_date: Reconciliation date (expiration and grace clocks start here)
        grace_period_months: Statutory grace period; required only when a
            grace-eligible unit loses qualification
        rules: Ordered tie-break rules
        skipped: GEOIDs that could not be evaluated this run; those with a
            designation on record are left as they are

    Raises:
        MissingGracePeriodConfigError: If a redesignation is needed and no
            grace period is configured
    """
    changeset = Changeset()

    for geoid in sorted(set(candidates) | set(current)):
        unit_candidates = candidates.get(geoid) or []
        cur = current.get(geoid)

        if cur is not None and skipped and geoid in skipped:
            changeset.skipped.append(geoid)
            continue

        if unit_candidates:
            try:
                chosen = choose_candidate(geoid, unit_candidates, cur, rules)
            except ReconciliationConflict as e:
                logger.warning(e.message)
                changeset.conflicts.append(e)
                continue
            reason = chosen.qualification.to_dict() if chosen.qualification else None

            if cur is None:
                changeset.new.append(DesignationChange(
                    geoid=geoid,
                    state_fips=chosen.state_fips,
                    county_fips=chosen.county_fips,
                    change=CHANGE_NEW,
                    designation_type=chosen.designation_type,
                    designation_date=run_date,
                    expiration_date=chosen.expiration_date,
                    source_dataset=chosen.source_dataset,
                    reason=reason,
                ))
            elif cur.designation_type == chosen.designation_type:
                changeset.unchanged.append(geoid)
            else:
                changeset.updated.append(DesignationChange(
                    geoid=geoid,
                    state_fips=cur.state_fips,
                    county_fips=cur.county_fips,
                    change=CHANGE_UPDATED,
                    designation_type=chosen.designation_type,
                    previous_type=cur.designation_type,
                    designation_date=run_date,
                    expiration_date=chosen.expiration_date,
                    source_dataset=chosen.source_dataset,
                    reason=reason,
                ))
            continue

        # Active on record, no longer qualifies
        if cur.designation_type in GRACE_PERIOD_TYPES:
            if not grace_period_months:
                raise MissingGracePeriodConfigError(
                    f"Unit {geoid} must be redesignated but no grace period is configured"
                )
            changeset.redesignated.append(DesignationChange(
                geoid=geoid,
                state_fips=cur.state_fips,
                county_fips=cur.county_fips,
                change=CHANGE_REDESIGNATED,
                designation_type=cur.designation_type,
                previous_type=cur.designation_type,
                designation_date=cur.designation_date,
                grace_period_end_date=add_months(run_date, grace_period_months),
                source_dataset=cur.source_dataset,
            ))
        else:
            changeset.expired.append(DesignationChange(
                geoid=geoid,
                state_fips=cur.state_fips,
                county_fips=cur.county_fips,
                change=CHANGE_EXPIRED,
                designation_type=cur.designation_type,
                previous_type=cur.designation_type,
                designation_date=cur.designation_date,
                expiration_date=run_date,
                source_dataset=cur.source_dataset,
            ))

    logger.info(f"Reconciled {len(set(candidates) | set(current))} units: {changeset.counts()}")
    return changeset


def build_candidates(
    qualification: Dict[str, QualificationResult],
    units: Dict[str, Any],
    feed_entries: Iterable[Any],
) -> Dict[str, List[Candidate]]:
    """
    Assemble candidates from evaluator results and current SBA feed entries.

    Args:
        qualification: GEOID -> evaluator result (only qualified ones count)
        units: GEOID -> boundary record supplying state/county codes
        feed_entries: FeedDesignation entries already filtered to current ones
    """
    candidates: Dict[str, List[Candidate]] = {}

    for geoid, result in qualification.items():
        if not result.is_qualified:
            continue
        unit = units.get(geoid)
        candidates.setdefault(geoid, []).append(Candidate(
            geoid=geoid,
            state_fips=unit.state_fips if unit else geoid[:2],
            county_fips=unit.county_fips if unit else geoid[2:5],
            designation_type=DesignationType.QUALIFIED_CENSUS_TRACT,
            source_dataset="census_acs",
            qualification=result,
        ))

    for entry in feed_entries:
        candidates.setdefault(entry.geoid, []).append(Candidate(
            geoid=entry.geoid,
            state_fips=entry.state_fips,
            county_fips=entry.county_fips,
            designation_type=entry.designation_type,
            source_dataset="sba_feed",
            expiration_date=entry.expiration_date,
        ))

    return candidates
