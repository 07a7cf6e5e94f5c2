"""APScheduler integration for FastAPI.

Runs the outcome resolution cycle on a fixed interval. Running it more
often than calls cross their thresholds is harmless: a cycle with nothing
to do leaves the ledger untouched.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from signal_outcomes.services.price_oracle import PriceCache
from signal_outcomes.utils.constants import INTERVAL_HOURS

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

RESOLVE_JOB_ID = "resolve_outcomes"


def _get_trigger(interval: str) -> IntervalTrigger:
    # Support arbitrary "<N>m" schedule intervals
    if interval.endswith("m") and interval[:-1].isdigit():
        return IntervalTrigger(minutes=int(interval[:-1]))
    hours = INTERVAL_HOURS.get(interval, 1.0)
    if hours < 1:
        return IntervalTrigger(minutes=int(hours * 60))
    return IntervalTrigger(hours=hours)


def add_resolve_job(interval: str, price_cache: PriceCache | None = None):
    """Add or replace the outcome resolution job."""
    from signal_outcomes.engine.cycle import run_scheduled_cycle

    # Remove existing job if present
    if scheduler.get_job(RESOLVE_JOB_ID):
        scheduler.remove_job(RESOLVE_JOB_ID)

    scheduler.add_job(
        run_scheduled_cycle,
        trigger=_get_trigger(interval),
        kwargs={"price_cache": price_cache},
        id=RESOLVE_JOB_ID,
        name="Resolve signal outcomes",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled outcome resolution every {interval}")


def reschedule_resolve_job(interval: str, price_cache: PriceCache | None = None):
    """Reschedule the existing job with a new interval."""
    if scheduler.get_job(RESOLVE_JOB_ID):
        scheduler.reschedule_job(RESOLVE_JOB_ID, trigger=_get_trigger(interval))
        logger.info(f"Rescheduled outcome resolution to {interval}")
    else:
        add_resolve_job(interval, price_cache)


def start_scheduler(interval: str, price_cache: PriceCache | None = None):
    """Start the scheduler with the resolution job."""
    add_resolve_job(interval, price_cache)
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def _next_run(job) -> str | None:
    # Jobs added before the scheduler starts have no next_run_time yet
    next_run = getattr(job, "next_run_time", None)
    return str(next_run) if next_run else None


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": _next_run(j),
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
