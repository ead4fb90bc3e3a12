"""
Quarterly scheduler for the HUBZone map update job.

Uses APScheduler to fire the job at midnight on the first day of each
quarter. The scheduler is only a timer: all work is delegated to the job
execution engine, and the job is registered with max_instances=1 so it
never overlaps with itself.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from hubzone.core.config import get_settings

logger = logging.getLogger(__name__)

SCHEDULER_JOB_ID = "hubzone_map_update_quarterly"

QUARTERLY_CRON = "0 0 1 1,4,7,10 *"
CRON_DESCRIPTION = "Quarterly at midnight on January 1, April 1, July 1, and October 1"
QUARTER_START_MONTHS = (1, 4, 7, 10)

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def get_next_quarterly_run(after: Optional[datetime] = None) -> datetime:
    """
    Next quarterly fire time strictly after `after` (default: now, UTC).

    Fire times are midnight on January 1, April 1, July 1 and October 1.
    """
    after = after or datetime.utcnow()
    for month in QUARTER_START_MONTHS:
        candidate = datetime(after.year, month, 1)
        if candidate > after:
            return candidate
    return datetime(after.year + 1, 1, 1)


def quarterly_trigger() -> CronTrigger:
    return CronTrigger(month="1,4,7,10", day=1, hour=0, minute=0, timezone="UTC")


def get_scheduler(persistent: bool = True) -> AsyncIOScheduler:
    """Get or create the global scheduler instance with persistent job store."""
    global _scheduler
    if _scheduler is None:
        if persistent:
            settings = get_settings()
            jobstores = {
                "default": SQLAlchemyJobStore(url=settings.database_url),
            }
            _scheduler = AsyncIOScheduler(jobstores=jobstores)
        else:
            _scheduler = AsyncIOScheduler()
    return _scheduler


def reset_scheduler() -> None:
    """Drop the global scheduler (used by tests)."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None


async def run_scheduled_map_update():
    """
    Execute the quarterly map update.

    Called by APScheduler. A run already in progress is logged, not queued.
    """
    from hubzone.core.errors import ExecutionAlreadyRunning
    from hubzone.core.models import TriggerType
    from hubzone.jobs.map_update_job import MapUpdateJob

    logger.info("Quarterly HUBZone map update triggered")
    job = MapUpdateJob()
    try:
        detail = await job.run(trigger_type=TriggerType.SCHEDULED, triggered_by="scheduler")
        logger.info(f"Scheduled map update {detail.id} finished: {detail.status.value}")
    except ExecutionAlreadyRunning as e:
        logger.warning(f"Skipping scheduled run: {e}")
    except Exception as e:
        logger.error(f"Error running scheduled map update: {e}", exc_info=True)
    finally:
        await job.close()


def register_quarterly_job(scheduler: Optional[AsyncIOScheduler] = None) -> None:
    """Register the quarterly map update job (idempotent)."""
    scheduler = scheduler or get_scheduler()
    scheduler.add_job(
        run_scheduled_map_update,
        trigger=quarterly_trigger(),
        id=SCHEDULER_JOB_ID,
        name="HUBZone Map Update (quarterly)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Registered quarterly map update: {CRON_DESCRIPTION}")


def start_scheduler(persistent: bool = True):
    """Start the scheduler if not already running."""
    scheduler = get_scheduler(persistent=persistent)
    register_quarterly_job(scheduler)
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler."""
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def is_scheduler_running() -> bool:
    return _scheduler is not None and _scheduler.running


def get_next_run_time() -> datetime:
    """Next fire time from the live scheduler, or computed when it is not running."""
    if is_scheduler_running():
        job = _scheduler.get_job(SCHEDULER_JOB_ID)
        if job is not None and job.next_run_time is not None:
            return job.next_run_time.replace(tzinfo=None)
    return get_next_quarterly_run()


def get_scheduler_status() -> Dict[str, Any]:
    """Get current scheduler status."""
    return {
        "running": is_scheduler_running(),
        "job_id": SCHEDULER_JOB_ID,
        "cron_expression": QUARTERLY_CRON,
        "cron_description": CRON_DESCRIPTION,
        "next_run": get_next_run_time().isoformat(),
    }
