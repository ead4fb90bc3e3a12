"""
HUBZone map update job: the job execution engine.

Drives one import execution through its stages:

    acquire -> evaluate -> reconcile -> resolve -> persist -> handoff

Single-flight is enforced with the execution lock row; every run leaves an
ImportExecution record with statistics, errors and warnings. Non-fatal
conditions (one state's feed missing, a tract without data, an ambiguous
designation) are recorded and the run continues; fatal ones (the national
county feed unavailable, a failed commit, the overall timeout) end it as
failed. Persistence is one transaction: the changeset applies completely or
not at all.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from hubzone.core.config import MissingGracePeriodConfigError, Settings, get_settings
from hubzone.core.database import get_session_factory, session_scope
from hubzone.core.errors import (
    DatasetUnavailable,
    ExecutionAlreadyRunning,
    ExecutionCancelled,
    ExecutionTimeout,
    PersistenceFailure,
    PipelineError,
    SEVERITY_FATAL,
    SEVERITY_WARNING,
    make_entry,
)
from hubzone.core.event_bus import (
    DATASET_ACQUIRED,
    EXECUTION_FINISHED,
    EXECUTION_STARTED,
    STAGE_COMPLETED,
    STAGE_STARTED,
    WARNING,
    EventBus,
    ExecutionEvent,
)
from hubzone.core.execution_lock import acquire_lock, current_holder, release_lock
from hubzone.core.models import (
    AffectedBusinessChange,
    Business,
    Designation,
    DesignationStatus,
    ExecutionStatus,
    GeographicUnit,
    ImportExecution,
    TriggerType,
    UnitType,
)
from hubzone.core.scheduler_service import get_next_run_time, is_scheduler_running
from hubzone.core.schemas import (
    ExecutionDetail,
    ImportOptions,
    ImportStatistics,
    JobStatusResponse,
    TriggerResponse,
)
from hubzone.jobs.execution_status import (
    JOB_ID,
    get_execution_detail,
    get_job_status,
    request_cancel,
)
from hubzone.services.business_resolver import AffectedChange, BusinessLocation, resolve
from hubzone.services.dataset_cache import DatasetCacheManager, LocalDataset, SourceSpec
from hubzone.services.designation_diff import (
    Candidate,
    Changeset,
    CurrentDesignation,
    build_candidates,
    reconcile,
)
from hubzone.services.geometry import BoundaryIndex
from hubzone.services.notification_handoff import (
    NotificationService,
    OutboxNotificationService,
    mark_notified,
    record_admin_notification,
)
from hubzone.services.qualification import QualificationResult, evaluate_units
from hubzone.sources.census.client import CensusAcsSource
from hubzone.sources.census.geojson import BoundaryRecord, TigerBoundarySource, parse_boundaries
from hubzone.sources.census.metadata import ALL_STATE_FIPS, EconomicProfile, parse_acs_response
from hubzone.sources.sba.client import (
    FeedDesignation,
    SbaDesignationSource,
    current_entries,
    parse_designations,
)

logger = logging.getLogger(__name__)

STAGE_ACQUIRE = "acquire"
STAGE_EVALUATE = "evaluate"
STAGE_RECONCILE = "reconcile"
STAGE_RESOLVE = "resolve"
STAGE_PERSIST = "persist"
STAGE_HANDOFF = "handoff"


def generate_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:24]}"


@dataclass
class StateData:
    """Datasets acquired for one state."""
    state_fips: str
    tracts: List[BoundaryRecord] = field(default_factory=list)
    profiles: Dict[str, EconomicProfile] = field(default_factory=dict)
    feed: Dict[str, FeedDesignation] = field(default_factory=dict)


@dataclass
class AcquiredData:
    """Everything the acquisition stage produced."""
    counties: List[BoundaryRecord] = field(default_factory=list)
    states: Dict[str, StateData] = field(default_factory=dict)
    skipped_states: List[str] = field(default_factory=list)

    def units_for(self, state_fips: str) -> Dict[str, BoundaryRecord]:
        units = {c.geoid: c for c in self.counties if c.state_fips == state_fips}
        state = self.states.get(state_fips)
        if state:
            units.update({t.geoid: t for t in state.tracts})
        return units

    def all_units(self) -> Dict[str, BoundaryRecord]:
        units: Dict[str, BoundaryRecord] = {}
        for state_fips in self.states:
            units.update(self.units_for(state_fips))
        return units


@dataclass
class RunContext:
    """Mutable state of one running execution."""
    execution_id: str
    options: ImportOptions
    run_date: date
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    statistics: Optional[ImportStatistics] = None
    changeset: Optional[Changeset] = None
    affected: List[AffectedChange] = field(default_factory=list)
    retry_count: int = 0
    stage: Optional[str] = None


class MapUpdateJob:
    """
    Job execution engine for HUBZone map updates.

    Usage:
        job = MapUpdateJob()
        detail = await job.run(ImportOptions(states=["11"]), triggered_by="ops")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory=None,
        cache_manager: Optional[DatasetCacheManager] = None,
        notification_service: Optional[NotificationService] = None,
        event_bus=EventBus,
        clock: Callable[[], datetime] = datetime.utcnow,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache_directory: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.cache = cache_manager or DatasetCacheManager.from_settings(
            self.settings,
            session_factory=self.session_factory,
            transport=transport,
            cache_directory=cache_directory,
        )
        self.notification_service = notification_service or OutboxNotificationService()
        self.event_bus = event_bus
        self.clock = clock

        self.tiger = TigerBoundarySource(self.settings.tiger_base_url, self.settings.boundary_vintage)
        self.acs = CensusAcsSource(
            base_url=self.settings.census_acs_base_url,
            year=self.settings.acs_year,
            api_key=self.settings.census_survey_api_key,
        )
        self.sba = SbaDesignationSource(self.settings.sba_api_endpoint)

        self._tasks: Dict[str, asyncio.Task] = {}

    async def close(self) -> None:
        await self.cache.close()

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def _begin(
        self,
        options: ImportOptions,
        trigger_type: TriggerType,
        triggered_by: Optional[str],
    ) -> str:
        """Take the execution lock and create the execution record."""
        execution_id = generate_execution_id()

        with session_scope(self.session_factory) as db:
            if not acquire_lock(db, execution_id, self.settings.lock_lease_seconds):
                holder = current_holder(db)
                logger.warning(f"Rejected trigger: execution {holder} is already running")
                raise ExecutionAlreadyRunning(holder)

        try:
            with session_scope(self.session_factory) as db:
                db.add(ImportExecution(
                    id=execution_id,
                    job_id=JOB_ID,
                    trigger_type=trigger_type,
                    triggered_by=triggered_by,
                    status=ExecutionStatus.PENDING,
                    options=options.model_dump(),
                    errors=[],
                    warnings=[],
                    retry_count=0,
                    max_retries=self.settings.stage_max_retries,
                ))
        except Exception:
            with session_scope(self.session_factory) as db:
                release_lock(db, execution_id)
            raise

        logger.info(
            f"Created execution {execution_id} ({trigger_type.value}, "
            f"dry_run={options.dry_run}, states={options.states or 'all'})"
        )
        return execution_id

    async def run(
        self,
        options: Optional[ImportOptions] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> ExecutionDetail:
        """
        Run one execution to completion.

        Raises:
            ExecutionAlreadyRunning: If another execution holds the lock
        """
        options = options or ImportOptions()
        execution_id = self._begin(options, trigger_type, triggered_by)
        await self._execute(execution_id, options)
        return self.get_execution(execution_id)

    async def start(
        self,
        options: Optional[ImportOptions] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> TriggerResponse:
        """
        Start an execution in the background and return immediately.

        Raises:
            ExecutionAlreadyRunning: If another execution holds the lock
        """
        options = options or ImportOptions()
        execution_id = self._begin(options, trigger_type, triggered_by)
        task = asyncio.create_task(self._execute(execution_id, options))
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(execution_id, None))
        return TriggerResponse(
            execution_id=execution_id,
            status=ExecutionStatus.PENDING,
            message="Map update started",
        )

    async def wait(self, execution_id: str) -> ExecutionDetail:
        """Wait for a background execution started by this engine."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await task
        return self.get_execution(execution_id)

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation; honored at the next stage boundary."""
        with session_scope(self.session_factory) as db:
            return request_cancel(db, execution_id)

    def get_execution(self, execution_id: str) -> ExecutionDetail:
        with session_scope(self.session_factory) as db:
            return get_execution_detail(db, execution_id)

    def get_status(self) -> JobStatusResponse:
        with session_scope(self.session_factory) as db:
            return get_job_status(
                db,
                scheduler_running=is_scheduler_running(),
                next_scheduled_run=get_next_run_time(),
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _publish(self, ctx: RunContext, event_type: str, **data) -> None:
        self.event_bus.publish(ExecutionEvent(ctx.execution_id, event_type, data))

    def _warn(self, ctx: RunContext, entry: Dict[str, Any]) -> None:
        ctx.warnings.append(entry)
        self._publish(ctx, WARNING, **entry)

    def _record(self, ctx: RunContext, error: PipelineError) -> None:
        """Record a non-fatal condition as a warning or error by its severity."""
        entry = error.to_entry()
        if entry["severity"] == SEVERITY_WARNING:
            self._warn(ctx, entry)
        else:
            ctx.errors.append(entry)

    def _checkpoint(self, ctx: RunContext, stage: str) -> None:
        """Stage boundary: honor cancellation, then announce the stage."""
        with session_scope(self.session_factory) as db:
            execution = db.get(ImportExecution, ctx.execution_id)
            if execution is not None and execution.cancel_requested:
                raise ExecutionCancelled(stage)
        ctx.stage = stage
        logger.info(f"[{ctx.execution_id}] Stage {stage} started")
        self._publish(ctx, STAGE_STARTED, stage=stage)

    def _stage_done(self, ctx: RunContext, **data) -> None:
        logger.info(f"[{ctx.execution_id}] Stage {ctx.stage} completed {data or ''}")
        self._publish(ctx, STAGE_COMPLETED, stage=ctx.stage, **data)

    async def _execute(self, execution_id: str, options: ImportOptions) -> None:
        started = time.monotonic()
        ctx = RunContext(
            execution_id=execution_id,
            options=options,
            run_date=self.clock().date(),
        )
        status = ExecutionStatus.FAILED
        error_message = None

        try:
            self._mark_running(ctx)
            await asyncio.wait_for(
                self._run_stages(ctx), timeout=self.settings.job_timeout_seconds
            )
            status = ExecutionStatus.COMPLETED

        except ExecutionCancelled as e:
            status = ExecutionStatus.CANCELLED
            error_message = e.message
            self._warn(ctx, e.to_entry())
            logger.warning(f"[{execution_id}] {e.message}")

        except asyncio.TimeoutError:
            timeout = ExecutionTimeout(self.settings.job_timeout_seconds)
            error_message = timeout.message
            ctx.errors.append(timeout.to_entry())
            logger.error(f"[{execution_id}] {timeout.message} (stage {ctx.stage})")

        except PipelineError as e:
            error_message = e.message
            entry = e.to_entry()
            entry["severity"] = SEVERITY_FATAL
            ctx.errors.append(entry)
            logger.error(f"[{execution_id}] Fatal {e.code} in stage {ctx.stage}: {e.message}", exc_info=True)

        except MissingGracePeriodConfigError as e:
            error_message = str(e)
            ctx.errors.append(make_entry("CONFIGURATION_ERROR", str(e), SEVERITY_FATAL))
            logger.error(f"[{execution_id}] {e}")

        except Exception as e:
            error_message = str(e)
            ctx.errors.append(make_entry("INTERNAL_ERROR", str(e), SEVERITY_FATAL))
            logger.error(f"[{execution_id}] Unexpected failure in stage {ctx.stage}: {e}", exc_info=True)

        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._finish(ctx, status, error_message, duration_ms)

    def _mark_running(self, ctx: RunContext) -> None:
        with session_scope(self.session_factory) as db:
            execution = db.get(ImportExecution, ctx.execution_id)
            execution.status = ExecutionStatus.RUNNING
            execution.started_at = self.clock()
        self._publish(ctx, EXECUTION_STARTED, options=ctx.options.model_dump())

    def _finish(
        self,
        ctx: RunContext,
        status: ExecutionStatus,
        error_message: Optional[str],
        duration_ms: int,
    ) -> None:
        """Write the final execution record, notify admins and release the lock."""
        try:
            with session_scope(self.session_factory) as db:
                execution = db.get(ImportExecution, ctx.execution_id)
                execution.status = status
                execution.completed_at = self.clock()
                execution.duration_ms = duration_ms
                execution.errors = list(ctx.errors)
                execution.warnings = list(ctx.warnings)
                execution.retry_count = ctx.retry_count
                execution.error_message = error_message
                if ctx.statistics is not None:
                    execution.statistics = ctx.statistics.model_dump()
                if ctx.changeset is not None:
                    execution.changeset = self._changeset_summary(ctx)
                execution.affected_business_count = len(ctx.affected)

                record_admin_notification(db, execution, self.settings.get_admin_emails())
        except SQLAlchemyError as e:
            logger.error(f"[{ctx.execution_id}] Failed to record execution result: {e}", exc_info=True)
        finally:
            with session_scope(self.session_factory) as db:
                release_lock(db, ctx.execution_id)

        logger.info(
            f"[{ctx.execution_id}] Execution {status.value} in {duration_ms}ms: "
            f"{len(ctx.errors)} errors, {len(ctx.warnings)} warnings"
        )
        self._publish(
            ctx, EXECUTION_FINISHED,
            status=status.value,
            statistics=ctx.statistics.model_dump() if ctx.statistics else None,
        )

    @staticmethod
    def _changeset_summary(ctx: RunContext) -> Dict[str, Any]:
        summary = ctx.changeset.summary()
        summary["dry_run"] = ctx.options.dry_run
        summary["run_date"] = ctx.run_date.isoformat()
        summary["affected_businesses"] = [a.to_dict() for a in ctx.affected]
        return summary

    async def _run_stages(self, ctx: RunContext) -> None:
        scope = ctx.options.states or ALL_STATE_FIPS

        self._checkpoint(ctx, STAGE_ACQUIRE)
        acquired = await self._stage_acquire(ctx, scope)

        self._checkpoint(ctx, STAGE_EVALUATE)
        candidates, evaluated, unevaluated = self._stage_evaluate(ctx, acquired)

        self._checkpoint(ctx, STAGE_RECONCILE)
        current = self._stage_reconcile(ctx, acquired, candidates, unevaluated)

        self._checkpoint(ctx, STAGE_RESOLVE)
        self._stage_resolve(ctx, acquired, current)

        ctx.statistics = self._build_statistics(ctx, acquired, evaluated, current)

        if ctx.options.dry_run:
            logger.info(f"[{ctx.execution_id}] Dry run: skipping persistence and notifications")
            return

        self._checkpoint(ctx, STAGE_PERSIST)
        self._stage_persist(ctx, acquired)

        if ctx.options.skip_notifications:
            logger.info(f"[{ctx.execution_id}] Notifications skipped by request")
            return

        ctx.stage = STAGE_HANDOFF
        self._publish(ctx, STAGE_STARTED, stage=STAGE_HANDOFF)
        self._stage_handoff(ctx)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _specs_for(self, scope: List[str]) -> List[SourceSpec]:
        specs = [self.tiger.county_spec()]
        for state_fips in scope:
            specs.append(self.tiger.tract_spec(state_fips))
            specs.append(self.acs.state_spec(state_fips))
            specs.append(self.sba.state_spec(state_fips))
        return specs

    async def _stage_acquire(self, ctx: RunContext, scope: List[str]) -> AcquiredData:
        """
        Acquire every scoped dataset, waiting for all downloads to settle.

        Retryable failures are attempted again at the engine level up to
        stage_max_retries, with a linearly growing delay.
        """
        pending = self._specs_for(scope)
        datasets: Dict[str, LocalDataset] = {}
        failures: Dict[str, DatasetUnavailable] = {}

        for attempt in range(self.settings.stage_max_retries + 1):
            results = await self.cache.acquire_many(pending)
            failures = {}
            for spec, result in zip(pending, results):
                if isinstance(result, DatasetUnavailable):
                    failures[spec.cache_key] = result
                else:
                    datasets[spec.cache_key] = result
                    self._publish(
                        ctx, DATASET_ACQUIRED,
                        source_id=spec.source_id,
                        scope=spec.scope,
                        from_cache=result.from_cache,
                        byte_size=result.byte_size,
                    )

            retryable = [k for k, f in failures.items() if f.retryable]
            if not retryable or attempt >= self.settings.stage_max_retries:
                break

            ctx.retry_count += 1
            self._save_retry_count(ctx)
            delay = self.settings.stage_retry_delay_seconds * (attempt + 1)
            logger.warning(
                f"[{ctx.execution_id}] {len(retryable)} datasets unavailable; "
                f"retrying acquisition in {delay}s (retry {ctx.retry_count})"
            )
            await asyncio.sleep(delay)
            pending = [s for s in pending if s.cache_key in failures]

        county_spec = self.tiger.county_spec()
        if county_spec.cache_key in failures:
            raise failures[county_spec.cache_key]

        acquired = AcquiredData()
        acquired.counties = parse_boundaries(
            datasets[county_spec.cache_key].json(), UnitType.COUNTY, self.settings.boundary_vintage
        )

        for failure in failures.values():
            self._record(ctx, failure)

        for state_fips in scope:
            tract_ds = datasets.get(self.tiger.tract_spec(state_fips).cache_key)
            acs_ds = datasets.get(self.acs.state_spec(state_fips).cache_key)
            sba_ds = datasets.get(self.sba.state_spec(state_fips).cache_key)

            if tract_ds is None or acs_ds is None or sba_ds is None:
                missing = [
                    name for name, ds in (("tracts", tract_ds), ("acs", acs_ds), ("sba", sba_ds))
                    if ds is None
                ]
                acquired.skipped_states.append(state_fips)
                self._warn(ctx, make_entry(
                    "STATE_SKIPPED",
                    f"State {state_fips} skipped: unavailable {', '.join(missing)}",
                    SEVERITY_WARNING,
                ))
                continue

            acquired.states[state_fips] = StateData(
                state_fips=state_fips,
                tracts=parse_boundaries(tract_ds.json(), UnitType.TRACT, self.settings.boundary_vintage),
                profiles=parse_acs_response(acs_ds.json(), vintage=self.settings.acs_year),
                feed=parse_designations(sba_ds.json()),
            )

        self._stage_done(
            ctx,
            states_processed=len(acquired.states),
            states_skipped=len(acquired.skipped_states),
            counties=len(acquired.counties),
        )
        return acquired

    def _save_retry_count(self, ctx: RunContext) -> None:
        with session_scope(self.session_factory) as db:
            execution = db.get(ImportExecution, ctx.execution_id)
            execution.retry_count = ctx.retry_count

    def _stage_evaluate(self, ctx: RunContext, acquired: AcquiredData):
        """Evaluate tracts and assemble candidates per state; tracts without data are skipped."""
        candidates: Dict[str, Dict[str, List[Candidate]]] = {}
        evaluated: Dict[str, QualificationResult] = {}
        unevaluated: Set[str] = set()

        for state_fips, state in acquired.states.items():
            results, missing = evaluate_units([t.geoid for t in state.tracts], state.profiles)
            for condition in missing:
                self._record(ctx, condition)
                unevaluated.add(condition.geoid)
            evaluated.update(results)

            candidates[state_fips] = build_candidates(
                results,
                acquired.units_for(state_fips),
                current_entries(state.feed, ctx.run_date),
            )

        self._stage_done(
            ctx,
            evaluated_units=len(evaluated),
            qualified_units=sum(1 for r in evaluated.values() if r.is_qualified),
            unevaluated_units=len(unevaluated),
        )
        return candidates, evaluated, unevaluated

    def _stage_reconcile(
        self,
        ctx: RunContext,
        acquired: AcquiredData,
        candidates: Dict[str, Dict[str, List[Candidate]]],
        unevaluated: Set[str],
    ) -> Dict[str, CurrentDesignation]:
        """Diff candidates against the active set, state by state."""
        states = list(acquired.states)
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(Designation)
                .filter(
                    Designation.status == DesignationStatus.ACTIVE,
                    Designation.state_fips.in_(states),
                )
                .all()
            )
            current = {row.geoid: CurrentDesignation.from_model(row) for row in rows}

        changeset = Changeset()
        for state_fips in states:
            state_current = {g: c for g, c in current.items() if c.state_fips == state_fips}
            changeset = changeset.merge(reconcile(
                candidates.get(state_fips, {}),
                state_current,
                ctx.run_date,
                grace_period_months=self.settings.redesignation_grace_period_months,
                skipped=unevaluated,
            ))

        for conflict in changeset.conflicts:
            self._record(ctx, conflict)

        ctx.changeset = changeset
        self._stage_done(ctx, **changeset.counts())
        return current

    def _stage_resolve(
        self,
        ctx: RunContext,
        acquired: AcquiredData,
        current: Dict[str, CurrentDesignation],
    ) -> None:
        """Find businesses whose status moves with this changeset."""
        changeset = ctx.changeset
        active_before: Set[str] = set(current)

        index = BoundaryIndex()
        units = acquired.all_units()
        needed = active_before | {c.geoid for c in changeset.new}
        for geoid in needed:
            if geoid in units:
                index.add(geoid, units[geoid].geometry)

        with session_scope(self.session_factory) as db:
            stored_ids = [g for g in needed if g not in index]
            if stored_ids:
                for unit in db.query(GeographicUnit).filter(GeographicUnit.geoid.in_(stored_ids)):
                    index.add(unit.geoid, unit.geometry)

            businesses = [
                BusinessLocation.from_model(b)
                for b in db.query(Business).filter(Business.state_fips.in_(list(acquired.states)))
            ]

        affected, problems = resolve(changeset, businesses, index, active_before)
        for problem in problems:
            self._record(ctx, problem)

        ctx.affected = affected
        self._stage_done(ctx, businesses=len(businesses), affected=len(affected))

    def _build_statistics(
        self,
        ctx: RunContext,
        acquired: AcquiredData,
        evaluated: Dict[str, QualificationResult],
        current: Dict[str, CurrentDesignation],
    ) -> ImportStatistics:
        changeset = ctx.changeset
        with session_scope(self.session_factory) as db:
            active_now = (
                db.query(func.count(Designation.id))
                .filter(Designation.status == DesignationStatus.ACTIVE)
                .scalar()
            ) or 0

        return ImportStatistics(
            total_units=len(acquired.all_units()),
            evaluated_units=len(evaluated),
            new_designations=len(changeset.new),
            updated_designations=len(changeset.updated),
            expired_designations=len(changeset.expired),
            redesignated_areas=len(changeset.redesignated),
            unchanged_designations=len(changeset.unchanged),
            skipped_units=len(changeset.skipped),
            active_hubzones=active_now + len(changeset.new)
            - len(changeset.expired) - len(changeset.redesignated),
            affected_businesses=len(ctx.affected),
            states_processed=sorted(acquired.states),
            skipped_states=sorted(acquired.skipped_states),
            conflicts=len(changeset.conflicts),
            partial_coverage=bool(acquired.skipped_states),
        )

    def _stage_persist(self, ctx: RunContext, acquired: AcquiredData) -> None:
        """
        Apply the changeset in one transaction.

        Raises:
            PersistenceFailure: If the commit fails; nothing is applied
        """
        try:
            with session_scope(self.session_factory) as db:
                refreshed = self._upsert_units(db, acquired.all_units())
                self._apply_changeset(db, ctx)
                self._write_business_changes(db, ctx)

                execution = db.get(ImportExecution, ctx.execution_id)
                execution.statistics = ctx.statistics.model_dump()
                execution.changeset = self._changeset_summary(ctx)
                execution.affected_business_count = len(ctx.affected)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Changeset commit failed and was rolled back: {e}") from e

        self._stage_done(ctx, units_refreshed=refreshed, changes=len(ctx.changeset.changes))

    @staticmethod
    def _upsert_units(db, units: Dict[str, BoundaryRecord]) -> int:
        """Write reference geography whose geometry hash changed."""
        existing = {}
        ids = list(units)
        for start in range(0, len(ids), 500):
            for geoid, geometry_hash in (
                db.query(GeographicUnit.geoid, GeographicUnit.geometry_hash)
                .filter(GeographicUnit.geoid.in_(ids[start:start + 500]))
            ):
                existing[geoid] = geometry_hash

        refreshed = 0
        for geoid, record in units.items():
            if existing.get(geoid) == record.geometry_hash:
                continue
            db.merge(GeographicUnit(
                geoid=geoid,
                unit_type=record.unit_type,
                state_fips=record.state_fips,
                county_fips=record.county_fips,
                name=record.name,
                land_area=record.land_area,
                water_area=record.water_area,
                centroid_lat=record.centroid_lat,
                centroid_lon=record.centroid_lon,
                geometry=record.geometry,
                geometry_hash=record.geometry_hash,
                bbox_minx=record.bbox[0],
                bbox_miny=record.bbox[1],
                bbox_maxx=record.bbox[2],
                bbox_maxy=record.bbox[3],
                vintage=record.vintage,
            ))
            refreshed += 1
        return refreshed

    @staticmethod
    def _apply_changeset(db, ctx: RunContext) -> None:
        changeset = ctx.changeset
        geoids = [c.geoid for c in changeset.changes]
        rows = {
            row.geoid: row
            for row in db.query(Designation).filter(Designation.geoid.in_(geoids))
        } if geoids else {}

        for change in changeset.new:
            row = rows.get(change.geoid)
            if row is None:
                row = Designation(geoid=change.geoid)
                db.add(row)
            row.state_fips = change.state_fips
            row.county_fips = change.county_fips
            row.designation_type = change.designation_type
            row.status = DesignationStatus.ACTIVE
            row.designation_date = change.designation_date
            row.expiration_date = change.expiration_date
            row.grace_period_end_date = None
            row.source_dataset = change.source_dataset
            row.last_execution_id = ctx.execution_id

        for change in changeset.updated:
            row = rows[change.geoid]
            row.designation_type = change.designation_type
            row.designation_date = change.designation_date
            row.expiration_date = change.expiration_date
            row.grace_period_end_date = None
            row.source_dataset = change.source_dataset
            row.last_execution_id = ctx.execution_id

        for change in changeset.expired:
            row = rows[change.geoid]
            row.status = DesignationStatus.EXPIRED
            row.expiration_date = change.expiration_date
            row.last_execution_id = ctx.execution_id

        for change in changeset.redesignated:
            row = rows[change.geoid]
            row.status = DesignationStatus.REDESIGNATED
            row.grace_period_end_date = change.grace_period_end_date
            row.last_execution_id = ctx.execution_id

        db.flush()

    @staticmethod
    def _write_business_changes(db, ctx: RunContext) -> None:
        for change in ctx.affected:
            db.add(AffectedBusinessChange(
                execution_id=ctx.execution_id,
                business_id=change.business_id,
                business_name=change.business_name,
                previous_status=change.previous_status,
                new_status=change.new_status,
                change_type=change.change_type,
                geoid=change.geoid,
                grace_period_end_date=change.grace_period_end_date,
                notification_sent=False,
            ))

    def _stage_handoff(self, ctx: RunContext) -> None:
        """Hand affected businesses to the notification service; failures are not retried."""
        if not ctx.affected:
            self._stage_done(ctx, handed_off=0)
            return

        try:
            with session_scope(self.session_factory) as db:
                rows = (
                    db.query(AffectedBusinessChange)
                    .filter(AffectedBusinessChange.execution_id == ctx.execution_id)
                    .all()
                )
                accepted = self.notification_service.hand_off(db, ctx.execution_id, rows)
                mark_notified(rows, self.clock())
        except Exception as e:
            logger.warning(f"[{ctx.execution_id}] Notification hand-off failed: {e}")
            self._warn(ctx, make_entry(
                "NOTIFICATION_HANDOFF_FAILED", str(e), SEVERITY_WARNING
            ))
            return

        self._stage_done(ctx, handed_off=accepted)
