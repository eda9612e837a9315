"""
Job Scheduler
=============
APScheduler-based periodic jobs for the running service.
"""

from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from codex_meter.jobs.rebuild import RebuildController

logger = structlog.get_logger()


class JobScheduler:
    """
    Manages scheduled background jobs.
    """

    def __init__(self, controller: RebuildController, drift_check_hour: int = 3):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.controller = controller
        self.drift_check_hour = drift_check_hour

    async def run_drift_check(self) -> int:
        """Verify aggregates for every completed UTC day."""
        yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
        try:
            logger.info("Running scheduled drift check", until=str(yesterday))
            drift = await self.controller.verify(until=yesterday)
        except Exception as e:
            logger.error("Drift check failed", error=str(e))
            return 0

        if drift:
            logger.warning(
                "Daily aggregates disagree with raw events; run a rebuild",
                rows=len(drift),
                first=f"{drift[0].date} {drift[0].model}",
            )
        else:
            logger.info("Drift check passed")
        return len(drift)

    def setup(self) -> None:
        """Configure scheduled jobs."""
        self.scheduler.add_job(
            self.run_drift_check,
            CronTrigger(hour=self.drift_check_hour, minute=0, timezone="UTC"),
            id="drift_check",
            name="Daily Aggregate Drift Check",
            replace_existing=True,
        )
        logger.info("Scheduler configured", drift_check_hour=self.drift_check_hour)

    def start(self) -> None:
        """Start the scheduler."""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
