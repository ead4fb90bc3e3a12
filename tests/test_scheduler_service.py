"""
Unit tests for hubzone/core/scheduler_service.py

Tests cover next-run calculation, trigger construction, job registration,
and the scheduled entry point. All tests are fully offline.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from hubzone.core.errors import ExecutionAlreadyRunning
from hubzone.core.scheduler_service import (
    CRON_DESCRIPTION,
    QUARTERLY_CRON,
    SCHEDULER_JOB_ID,
    get_next_quarterly_run,
    get_scheduler_status,
    quarterly_trigger,
    register_quarterly_job,
    run_scheduled_map_update,
)


class TestNextQuarterlyRun:

    def test_mid_quarter(self):
        assert get_next_quarterly_run(datetime(2026, 2, 15, 12, 0)) == datetime(2026, 4, 1)

    def test_exactly_at_fire_time_moves_to_next_quarter(self):
        assert get_next_quarterly_run(datetime(2026, 4, 1, 0, 0)) == datetime(2026, 7, 1)

    def test_just_after_fire_time(self):
        assert get_next_quarterly_run(datetime(2026, 10, 1, 0, 0, 1)) == datetime(2027, 1, 1)

    def test_year_rollover(self):
        assert get_next_quarterly_run(datetime(2026, 12, 31, 23, 59)) == datetime(2027, 1, 1)


class TestQuarterlyTrigger:

    def test_trigger_type(self):
        assert isinstance(quarterly_trigger(), CronTrigger)

    @pytest.mark.parametrize("now, expected", [
        (datetime(2026, 2, 15, tzinfo=timezone.utc), datetime(2026, 4, 1)),
        (datetime(2026, 7, 1, 0, 0, 1, tzinfo=timezone.utc), datetime(2026, 10, 1)),
        (datetime(2026, 11, 30, tzinfo=timezone.utc), datetime(2027, 1, 1)),
    ])
    def test_fires_at_quarter_starts(self, now, expected):
        fire = quarterly_trigger().get_next_fire_time(None, now)
        assert fire.astimezone(timezone.utc).replace(tzinfo=None) == expected

    def test_cron_constants(self):
        assert QUARTERLY_CRON == "0 0 1 1,4,7,10 *"
        assert "January 1" in CRON_DESCRIPTION


class TestRegisterQuarterlyJob:

    @pytest.mark.asyncio
    async def test_registration_is_idempotent(self):
        scheduler = AsyncIOScheduler()
        scheduler.start()
        try:
            register_quarterly_job(scheduler)
            register_quarterly_job(scheduler)

            jobs = scheduler.get_jobs()
            assert len(jobs) == 1
            job = jobs[0]
            assert job.id == SCHEDULER_JOB_ID
            assert job.max_instances == 1
            assert job.coalesce is True
            assert job.next_run_time.day == 1
            assert job.next_run_time.month in (1, 4, 7, 10)
        finally:
            scheduler.shutdown(wait=False)

    def test_status_when_not_running(self):
        status = get_scheduler_status()
        assert status["running"] is False
        assert status["cron_expression"] == QUARTERLY_CRON
        assert status["job_id"] == SCHEDULER_JOB_ID


class TestRunScheduledMapUpdate:

    @pytest.mark.asyncio
    async def test_runs_scheduled_trigger(self):
        job = MagicMock()
        job.run = AsyncMock(return_value=MagicMock(id="exec_1", status=MagicMock(value="completed")))
        job.close = AsyncMock()

        with patch("hubzone.jobs.map_update_job.MapUpdateJob", return_value=job):
            await run_scheduled_map_update()

        kwargs = job.run.await_args.kwargs
        assert kwargs["trigger_type"].value == "scheduled"
        assert kwargs["triggered_by"] == "scheduler"
        job.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_skipped(self):
        job = MagicMock()
        job.run = AsyncMock(side_effect=ExecutionAlreadyRunning("exec_busy"))
        job.close = AsyncMock()

        with patch("hubzone.jobs.map_update_job.MapUpdateJob", return_value=job):
            await run_scheduled_map_update()

        job.close.assert_awaited_once()
