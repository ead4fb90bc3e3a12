"""
Pydantic schemas for run options, statistics and status queries.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from hubzone.core.models import ExecutionStatus, TriggerType
from hubzone.sources.census.metadata import normalize_state_fips


class ImportOptions(BaseModel):
    """Options bag of one import execution."""
    dry_run: bool = Field(
        default=False,
        description="Compute the changeset and affected businesses without persisting or notifying"
    )
    skip_notifications: bool = Field(
        default=False,
        description="Persist changes but do not hand off business notifications"
    )
    states: Optional[List[str]] = Field(
        default=None,
        description="Restrict the run to these state FIPS codes (None = all states)"
    )

    @field_validator("states")
    @classmethod
    def validate_states(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Normalize to 2-digit FIPS codes; accepts postal abbreviations."""
        if v is None:
            return None
        normalized = sorted({normalize_state_fips(s) for s in v if str(s).strip()})
        if not normalized:
            raise ValueError("states must name at least one state when given")
        return normalized


class ImportStatistics(BaseModel):
    """Aggregate counts of one reconciliation pass."""
    total_units: int = 0
    evaluated_units: int = 0
    new_designations: int = 0
    updated_designations: int = 0
    expired_designations: int = 0
    redesignated_areas: int = 0
    unchanged_designations: int = 0
    skipped_units: int = 0
    active_hubzones: int = 0
    affected_businesses: int = 0
    states_processed: List[str] = Field(default_factory=list)
    skipped_states: List[str] = Field(default_factory=list)
    conflicts: int = 0
    partial_coverage: bool = False


class TriggerResponse(BaseModel):
    """Result of triggering a run."""
    execution_id: str
    status: ExecutionStatus
    message: str


class ExecutionSummary(BaseModel):
    """Compact view of one execution, used in history listings."""
    id: str
    trigger_type: TriggerType
    triggered_by: Optional[str] = None
    status: ExecutionStatus
    options: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    statistics: Optional[Dict[str, Any]] = None
    error_count: int = 0
    warning_count: int = 0
    retry_count: int = 0

    @classmethod
    def from_model(cls, execution) -> "ExecutionSummary":
        return cls(
            id=execution.id,
            trigger_type=execution.trigger_type,
            triggered_by=execution.triggered_by,
            status=execution.status,
            options=execution.options or {},
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration_ms=execution.duration_ms,
            statistics=execution.statistics,
            error_count=len(execution.errors or []),
            warning_count=len(execution.warnings or []),
            retry_count=execution.retry_count or 0,
        )


class ExecutionDetail(ExecutionSummary):
    """Full view of one execution, including every error and warning."""
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    changeset: Optional[Dict[str, Any]] = None
    affected_business_count: int = 0
    affected_businesses: List[Dict[str, Any]] = Field(default_factory=list)
    error_message: Optional[str] = None
    max_retries: int = 0
    cancel_requested: bool = False

    @classmethod
    def from_model(cls, execution, affected: Optional[List[Dict[str, Any]]] = None) -> "ExecutionDetail":
        summary = ExecutionSummary.from_model(execution)
        return cls(
            **summary.model_dump(),
            errors=execution.errors or [],
            warnings=execution.warnings or [],
            changeset=execution.changeset,
            affected_business_count=execution.affected_business_count or 0,
            affected_businesses=affected or [],
            error_message=execution.error_message,
            max_retries=execution.max_retries or 0,
            cancel_requested=bool(execution.cancel_requested),
        )


class JobStatusResponse(BaseModel):
    """Status of the map update job: schedule, current run and recent history."""
    job_id: str
    job_name: str
    description: str
    cron_expression: str
    cron_description: str
    scheduler_running: bool = False
    next_scheduled_run: Optional[datetime] = None
    currently_running: bool = False
    current_execution_id: Optional[str] = None
    last_execution: Optional[ExecutionSummary] = None
    history: List[ExecutionSummary] = Field(default_factory=list)
