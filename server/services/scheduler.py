"""
Scheduler Service using APScheduler.
Manages cron/date jobs for scheduled playbook triggers and resumption of
suspended runs.
"""
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.base import JobLookupError
from typing import Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler(timezone: str = "UTC") -> AsyncIOScheduler:
    """Get or create the singleton scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone=timezone)
    return _scheduler


def start_scheduler():
    """Start the scheduler if not already running."""
    scheduler = get_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("[Scheduler] Started")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("[Scheduler] Shutdown")


def reset_scheduler():
    """Drop the singleton (a fresh one is created on next use)."""
    global _scheduler
    shutdown_scheduler()
    _scheduler = None


def register_cron_job(
    job_id: str,
    cron_expression: str,
    callback: Callable,
    timezone: str = "UTC",
    **kwargs
) -> str:
    """
    Register a cron job with the scheduler.

    Args:
        job_id: Unique identifier for the job
        cron_expression: 5-field cron expression (minute hour day month weekday);
                        weekday accepts names (mon,tue,...)
        callback: Async function to call when job fires
        timezone: Timezone for schedule (default: UTC)
        **kwargs: Additional arguments passed to the callback

    Returns:
        The job_id
    """
    scheduler = get_scheduler()

    parts = cron_expression.split()
    if len(parts) < 5:
        parts.extend(['*'] * (5 - len(parts)))
    trigger = CronTrigger(
        second='0',
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone
    )

    scheduler.add_job(
        callback,
        trigger=trigger,
        id=job_id,
        replace_existing=True,
        coalesce=True,
        kwargs=kwargs
    )

    logger.info(f"[Scheduler] Registered cron job: {job_id} with expression: {cron_expression}")
    return job_id


def register_date_job(
    job_id: str,
    run_date: datetime,
    callback: Callable,
    **kwargs
) -> str:
    """
    Register a one-shot job. A run_date in the past fires as soon as the
    scheduler runs.

    Args:
        job_id: Unique identifier for the job
        run_date: Timezone-aware datetime to fire at
        callback: Async function to call when job fires
        **kwargs: Additional arguments passed to the callback

    Returns:
        The job_id
    """
    scheduler = get_scheduler()
    scheduler.add_job(
        callback,
        trigger=DateTrigger(run_date=run_date),
        id=job_id,
        replace_existing=True,
        misfire_grace_time=None,
        kwargs=kwargs
    )
    logger.info(f"[Scheduler] Registered date job: {job_id} at {run_date.isoformat()}")
    return job_id


def remove_job(job_id: str) -> bool:
    """
    Remove a job from the scheduler.

    Args:
        job_id: The job identifier to remove

    Returns:
        True if job was removed, False if not found
    """
    scheduler = get_scheduler()
    try:
        scheduler.remove_job(job_id)
        logger.info(f"[Scheduler] Removed job: {job_id}")
        return True
    except JobLookupError:
        logger.debug(f"[Scheduler] Job not found: {job_id}")
        return False


def _job_info(job) -> Dict:
    next_run_time = getattr(job, "next_run_time", None)
    return {
        "id": job.id,
        "next_run_time": next_run_time.isoformat() if next_run_time else None,
        "trigger": str(job.trigger)
    }


def get_job_info(job_id: str) -> Optional[Dict]:
    """
    Get information about a scheduled job.

    Args:
        job_id: The job identifier

    Returns:
        Dict with job info or None if not found
    """
    job = get_scheduler().get_job(job_id)
    return _job_info(job) if job else None


def get_all_jobs() -> List[Dict]:
    """Get list of all scheduled jobs."""
    return [_job_info(job) for job in get_scheduler().get_jobs()]
