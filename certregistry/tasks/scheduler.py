"""Background scheduler for the orphaned-upload sweep."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def _run_scheduled_sweep(context):
    """Run the orphan sweep as a scheduled job."""
    logger.info("Scheduled orphan sweep triggered")
    try:
        await context.reconciler.sweep_orphans()
    except Exception as e:
        logger.error("Scheduled orphan sweep failed: %s", e, exc_info=True)


def start_scheduler(context):
    """Start the sweep scheduler on the running event loop."""
    global _scheduler
    settings = context.settings

    if not settings.reconcile_enabled:
        logger.info("Orphan sweep scheduler disabled")
        return

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _run_scheduled_sweep,
        "interval",
        args=[context],
        minutes=settings.reconcile_interval_minutes,
        id="orphan_sweep",
        name="Orphaned Upload Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        "Scheduler started: orphan sweep every %d minutes",
        settings.reconcile_interval_minutes,
    )


def stop_scheduler():
    """Stop the sweep scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
