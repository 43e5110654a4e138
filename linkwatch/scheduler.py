"""APScheduler integration for the periodic maintenance jobs.

Three interval jobs run on the API's event loop: alert re-evaluation of
sessions still in progress, the historical metrics refresh, and cleanup of
finished child processes. A job whose interval is configured as 0 is skipped.
"""

import contextlib
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from linkwatch.config import get_settings
from linkwatch.process.manager import ProcessManager
from linkwatch.service import MonitorService

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


def _evaluation_job(service: MonitorService) -> None:
    try:
        created = service.evaluate_active_sessions()
        if created:
            logger.info("Periodic evaluation created %d alerts", created)
    except Exception:
        logger.exception("Periodic alert evaluation failed")


def _history_job(service: MonitorService) -> None:
    try:
        service.refresh_history()
    except Exception:
        logger.exception("Historical metrics refresh failed")


def _cleanup_job(processes: ProcessManager, retention: timedelta) -> None:
    try:
        processes.clean_up(retention)
    except Exception:
        logger.exception("Process cleanup failed")


def start_scheduler(service: MonitorService, processes: ProcessManager) -> None:
    """Register and start the interval jobs."""
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    scheduler = AsyncIOScheduler()

    if settings.evaluation_interval_seconds > 0:
        scheduler.add_job(
            _evaluation_job,
            trigger=IntervalTrigger(seconds=settings.evaluation_interval_seconds),
            args=[service],
            id="alert_evaluation",
            name="Alert evaluation of active sessions",
            replace_existing=True,
        )
    if settings.history_refresh_minutes > 0:
        scheduler.add_job(
            _history_job,
            trigger=IntervalTrigger(minutes=settings.history_refresh_minutes),
            args=[service],
            id="history_refresh",
            name="Historical metrics refresh",
            replace_existing=True,
        )
    if settings.process_retention_minutes > 0:
        retention = timedelta(minutes=settings.process_retention_minutes)
        scheduler.add_job(
            _cleanup_job,
            trigger=IntervalTrigger(minutes=settings.process_retention_minutes),
            args=[processes, retention],
            id="process_cleanup",
            name="Finished process cleanup",
            replace_existing=True,
        )

    if not scheduler.get_jobs():
        logger.info("Scheduler disabled (all job intervals are 0)")
        return

    scheduler.start()
    _scheduler = scheduler
    logger.info("Scheduler started with jobs: %s", ", ".join(job.id for job in scheduler.get_jobs()))


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        _scheduler = None


def get_scheduler() -> AsyncIOScheduler | None:
    return _scheduler
