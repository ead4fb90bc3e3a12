"""
Unit tests for hubzone/services/notification_handoff.py
"""
from datetime import date, datetime

import pytest

from hubzone.core.models import (
    AffectedBusinessChange,
    BusinessChangeType,
    ExecutionStatus,
    ImportExecution,
    JobNotification,
    NotificationOutbox,
    TriggerType,
)
from hubzone.services.notification_handoff import (
    OutboxNotificationService,
    build_completion_content,
    mark_notified,
    record_admin_notification,
)


def _execution():
    return ImportExecution(
        id="exec_abc",
        job_id="hubzone_map_update",
        trigger_type=TriggerType.MANUAL,
        status=ExecutionStatus.COMPLETED,
        options={"dry_run": False},
        started_at=datetime(2026, 1, 1, 0, 0, 0),
        completed_at=datetime(2026, 1, 1, 0, 5, 0),
        duration_ms=300000,
        statistics={"new_designations": 2},
        errors=[],
        warnings=[{"code": "STATE_SKIPPED"}],
    )


def _change(business_id, change_type, grace=None):
    return AffectedBusinessChange(
        execution_id="exec_abc",
        business_id=business_id,
        business_name=f"Business {business_id}",
        previous_status="in_hubzone",
        new_status="in_hubzone",
        change_type=change_type,
        geoid="11001000200",
        grace_period_end_date=grace,
        notification_sent=False,
    )


@pytest.mark.unit
class TestOutboxNotificationService:

    def test_hand_off_writes_one_row_per_change(self, test_db):
        changes = [
            _change("b1", BusinessChangeType.HUBZONE_REDESIGNATED, grace=date(2029, 1, 1)),
            _change("b2", BusinessChangeType.LOST_HUBZONE),
        ]

        accepted = OutboxNotificationService().hand_off(test_db, "exec_abc", changes)
        test_db.commit()

        assert accepted == 2
        rows = test_db.query(NotificationOutbox).order_by(NotificationOutbox.business_id).all()
        assert [r.business_id for r in rows] == ["b1", "b2"]
        assert rows[0].change_type == "hubzone_redesignated"
        assert rows[0].grace_period_end_date == date(2029, 1, 1)
        assert rows[0].payload["business_name"] == "Business b1"
        assert rows[0].consumed_at is None

    def test_mark_notified(self):
        changes = [_change("b1", BusinessChangeType.GAINED_HUBZONE)]
        sent_at = datetime(2026, 1, 1, 1, 0, 0)

        mark_notified(changes, sent_at)

        assert changes[0].notification_sent is True
        assert changes[0].notification_sent_at == sent_at


@pytest.mark.unit
class TestAdminNotification:

    def test_completion_content(self):
        content = build_completion_content(_execution())

        assert content["status"] == "completed"
        assert content["subject"] == "HUBZone map update completed: exec_abc"
        assert content["statistics"] == {"new_designations": 2}
        assert content["warning_count"] == 1
        assert content["dry_run"] is False

    def test_no_recipients_records_nothing(self, test_db):
        assert record_admin_notification(test_db, _execution(), []) is False
        test_db.commit()
        assert test_db.query(JobNotification).count() == 0

    def test_recipients_record_notification(self, test_db):
        assert record_admin_notification(test_db, _execution(), ["ops@example.gov"]) is True
        test_db.commit()

        notification = test_db.query(JobNotification).one()
        assert notification.execution_id == "exec_abc"
        assert notification.recipients == ["ops@example.gov"]
        assert notification.content["error_count"] == 0
