"""APScheduler integration for FastAPI.

Runs the recurring hedge sync, position sync and wallet sync jobs, plus the
optional threshold monitor.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from lp_hedger.config import settings
from lp_hedger.utils.constants import INTERVAL_HOURS

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

HEDGE_SYNC_JOB = "hedge_sync"
POSITION_SYNC_JOB = "position_sync"
WALLET_SYNC_JOB = "wallet_sync"
HEDGE_ANALYSIS_JOB = "hedge_analysis"


def _get_trigger(interval: str) -> IntervalTrigger:
    # Support arbitrary "<N>m" schedule intervals
    if interval.endswith("m") and interval[:-1].isdigit():
        return IntervalTrigger(minutes=int(interval[:-1]))
    hours = INTERVAL_HOURS.get(interval, 4.0)
    if hours < 1:
        return IntervalTrigger(minutes=int(hours * 60))
    return IntervalTrigger(hours=hours)


def add_interval_job(job_id: str, func, interval: str, name: str):
    """Add or replace a recurring job."""
    scheduler.add_job(
        func,
        trigger=_get_trigger(interval),
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled {name} every {interval}")


def start_scheduler():
    """Register the recurring jobs and start the scheduler."""
    from lp_hedger.engine.hedge_analysis import run_hedge_analysis
    from lp_hedger.engine.hedge_sync import run_hedge_sync
    from lp_hedger.engine.position_sync import run_position_sync
    from lp_hedger.engine.wallet_sync import run_wallet_sync

    add_interval_job(HEDGE_SYNC_JOB, run_hedge_sync, settings.hedge_sync_interval, "Hedge sync")
    add_interval_job(POSITION_SYNC_JOB, run_position_sync, settings.position_sync_interval, "Position sync")
    add_interval_job(WALLET_SYNC_JOB, run_wallet_sync, settings.wallet_sync_interval, "Wallet sync")
    if settings.hedge_analysis_interval:
        add_interval_job(
            HEDGE_ANALYSIS_JOB, run_hedge_analysis, settings.hedge_analysis_interval, "Hedge analysis"
        )

    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


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
                # Pending jobs (scheduler not started) have no next_run_time yet
                "next_run": str(j.next_run_time) if getattr(j, "next_run_time", None) else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
