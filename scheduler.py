import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import LedgerStore, StoreUnavailableError
from recurrence import RecurringEngine, RunReport, local_now


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, store: Optional[LedgerStore] = None) -> None:
        settings = get_settings()
        self.settings = settings
        self.store = store or LedgerStore()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> Optional[RunReport]:
        logger.info(f"scheduler_run: source={source}")
        try:
            report = RecurringEngine(self.store).run_once(local_now())
        except StoreUnavailableError:
            logger.exception(f"scheduler_run: source={source} aborted")
            return None
        logger.info(
            f"scheduler_run: source={source} processed={report.processed} "
            f"succeeded={report.succeeded} failed={len(report.failed)}"
        )
        for failure in report.failed:
            logger.warning(
                f"scheduler_run: source={source} failed_plan={failure.plan_id} "
                f"error={failure.error}"
            )
        return report

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled by configuration")
            return

        self._run_job("startup")

        hour = self.settings.scheduler_hour
        minute = self.settings.scheduler_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {hour:02d}:{minute:02d} and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
