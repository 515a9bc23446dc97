"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from stocksniper.config import settings
from stocksniper.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    The stock-check cycle runs every ``cycle_interval_seconds``. The Redis
    cycle lock keeps runs exclusive across processes; ``max_instances=1``
    and ``coalesce`` keep a slow run from stacking up inside this one.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    interval = max(5, int(settings.cycle_interval_seconds))

    scheduler.add_job(
        task_runner.run_scheduled_cycle,
        IntervalTrigger(seconds=interval),
        id="stock_check_cycle",
        name="Check watch items for stock",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=interval,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: stock-check cycle every %d seconds (budget %.0fs, max %d items)",
        interval,
        settings.cycle_budget_seconds,
        settings.max_items_per_cycle,
    )
    return scheduler
