import logging
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from core import Core
from periods import local_today


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, core: Core) -> None:
        self.core = core
        self.scheduler = BackgroundScheduler(timezone=core.settings.timezone)

    def _close_previous_day(self, source: str = "manual") -> None:
        today = local_today(self.core.settings.timezone, self.core.clock)
        day = today - timedelta(days=1)
        logger.info(f"scheduler_run: job=daily_close source={source} day={day}")
        result = self.core.snapshots.close_day(day)
        logger.info(
            f"scheduler_run: job=daily_close source={source} "
            f"created={result.created} existing={result.existing}"
        )

    def _reconcile(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=reconcile source={source}")
        report = self.core.reconciliation.reconcile_all()
        logger.info(
            f"scheduler_run: job=reconcile source={source} "
            f"checked={report.checked} drifted={report.drifted} "
            f"failures={len(report.failures)}"
        )

    def start(self) -> None:
        self._close_previous_day("startup")

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._close_previous_day,
            trigger,
            args=["daily_00:05"],
            id="daily_close",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._reconcile,
            trigger,
            args=["daily_03:15"],
            id="nightly_reconcile",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily close 00:05 and reconcile 03:15")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
