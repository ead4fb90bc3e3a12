"""
Notification hand-off.

The pipeline decides who must be notified; delivery belongs to the external
notification service. Hand-off failures are recorded, never retried.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from hubzone.core.models import AffectedBusinessChange, JobNotification, NotificationOutbox

logger = logging.getLogger(__name__)


class NotificationService(ABC):
    """Receiver of business status-change notification requests."""

    @abstractmethod
    def hand_off(
        self, db: Session, execution_id: str, changes: List[AffectedBusinessChange]
    ) -> int:
        """
        Hand off status changes for delivery.

        Returns:
            Number of changes accepted
        """


class OutboxNotificationService(NotificationService):
    """Writes one notification_outbox row per change for the delivery service to consume."""

    def hand_off(
        self, db: Session, execution_id: str, changes: List[AffectedBusinessChange]
    ) -> int:
        for change in changes:
            change_type = getattr(change.change_type, "value", change.change_type)
            db.add(NotificationOutbox(
                execution_id=execution_id,
                business_id=change.business_id,
                change_type=change_type,
                geoid=change.geoid,
                grace_period_end_date=change.grace_period_end_date,
                payload={
                    "business_name": change.business_name,
                    "previous_status": change.previous_status,
                    "new_status": change.new_status,
                },
            ))
        logger.info(f"Queued {len(changes)} notifications for execution {execution_id}")
        return len(changes)


def mark_notified(changes: List[AffectedBusinessChange], sent_at: datetime) -> None:
    for change in changes:
        change.notification_sent = True
        change.notification_sent_at = sent_at


def build_completion_content(execution) -> Dict[str, Any]:
    """Admin-facing summary of a finished execution."""
    statistics = execution.statistics or {}
    status = getattr(execution.status, "value", execution.status)
    return {
        "subject": f"HUBZone map update {status}: {execution.id}",
        "execution_id": execution.id,
        "status": status,
        "dry_run": bool((execution.options or {}).get("dry_run")),
        "started_at": execution.started_at.isoformat() if execution.started_at else None,
        "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
        "duration_ms": execution.duration_ms,
        "statistics": statistics,
        "error_count": len(execution.errors or []),
        "warning_count": len(execution.warnings or []),
        "error_message": execution.error_message,
    }


def record_admin_notification(db: Session, execution, recipients: List[str]) -> bool:
    """
    Record the admin completion notification for an execution.

    Returns:
        False when no recipients are configured
    """
    if not recipients:
        logger.info(f"No admin recipients configured; skipping completion notice for {execution.id}")
        return False

    db.add(JobNotification(
        execution_id=execution.id,
        notification_type="completion",
        recipients=list(recipients),
        content=build_completion_content(execution),
    ))
    logger.info(f"Recorded completion notice for {execution.id} to {len(recipients)} recipients")
    return True
