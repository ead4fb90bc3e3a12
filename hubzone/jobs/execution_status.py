"""
Execution status and history queries.

Pull-based view of the map update job: what is running, what ran, and the
full error/warning list of any execution.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from hubzone.core.errors import ExecutionNotFound
from hubzone.core.models import AffectedBusinessChange, ExecutionStatus, ImportExecution
from hubzone.core.schemas import ExecutionDetail, ExecutionSummary, JobStatusResponse
from hubzone.core.scheduler_service import CRON_DESCRIPTION, QUARTERLY_CRON

logger = logging.getLogger(__name__)

JOB_ID = "hubzone_map_update"
JOB_NAME = "HUBZone Map Update"
JOB_DESCRIPTION = (
    "Acquires boundary, economic and SBA designation data, reconciles HUBZone "
    "designations and flags affected businesses"
)

HISTORY_LIMIT = 10


def get_execution_history(db: Session, limit: int = HISTORY_LIMIT) -> List[ImportExecution]:
    """Most recent executions first."""
    return (
        db.query(ImportExecution)
        .filter(ImportExecution.job_id == JOB_ID)
        .order_by(ImportExecution.created_at.desc(), ImportExecution.id.desc())
        .limit(limit)
        .all()
    )


def get_running_execution(db: Session) -> Optional[ImportExecution]:
    return (
        db.query(ImportExecution)
        .filter(
            ImportExecution.job_id == JOB_ID,
            ImportExecution.status.in_([ExecutionStatus.PENDING, ExecutionStatus.RUNNING]),
        )
        .order_by(ImportExecution.created_at.desc())
        .first()
    )


def get_execution_detail(db: Session, execution_id: str) -> ExecutionDetail:
    """
    One execution with its errors, warnings and affected businesses.

    Raises:
        ExecutionNotFound: If no such execution exists
    """
    execution = db.get(ImportExecution, execution_id)
    if execution is None:
        raise ExecutionNotFound(execution_id)

    affected = (
        db.query(AffectedBusinessChange)
        .filter(AffectedBusinessChange.execution_id == execution_id)
        .order_by(AffectedBusinessChange.id)
        .all()
    )
    if affected:
        rows = [
            {
                "business_id": a.business_id,
                "business_name": a.business_name,
                "previous_status": a.previous_status,
                "new_status": a.new_status,
                "change_type": getattr(a.change_type, "value", a.change_type),
                "geoid": a.geoid,
                "grace_period_end_date": (
                    a.grace_period_end_date.isoformat() if a.grace_period_end_date else None
                ),
                "notification_sent": a.notification_sent,
            }
            for a in affected
        ]
    else:
        # Dry runs keep the computed list on the changeset summary only
        rows = (execution.changeset or {}).get("affected_businesses", [])

    return ExecutionDetail.from_model(execution, affected=rows)


def request_cancel(db: Session, execution_id: str) -> bool:
    """
    Flag a running execution for cancellation at its next stage boundary.

    Returns:
        False if the execution has already finished

    Raises:
        ExecutionNotFound: If no such execution exists
    """
    execution = db.get(ImportExecution, execution_id)
    if execution is None:
        raise ExecutionNotFound(execution_id)
    if execution.is_finished:
        logger.info(f"Execution {execution_id} already {execution.status.value}; nothing to cancel")
        return False
    execution.cancel_requested = True
    db.commit()
    logger.info(f"Cancellation requested for execution {execution_id}")
    return True


def get_job_status(
    db: Session,
    scheduler_running: bool = False,
    next_scheduled_run: Optional[datetime] = None,
) -> JobStatusResponse:
    """Schedule, current execution and the last executions of the job."""
    history = get_execution_history(db)
    running = get_running_execution(db)
    summaries = [ExecutionSummary.from_model(e) for e in history]

    return JobStatusResponse(
        job_id=JOB_ID,
        job_name=JOB_NAME,
        description=JOB_DESCRIPTION,
        cron_expression=QUARTERLY_CRON,
        cron_description=CRON_DESCRIPTION,
        scheduler_running=scheduler_running,
        next_scheduled_run=next_scheduled_run,
        currently_running=running is not None,
        current_execution_id=running.id if running else None,
        last_execution=summaries[0] if summaries else None,
        history=summaries,
    )
