import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import Settings, get_settings
from database import session_scope
from services import SnapshotService, reflect_due_all, settle_all_users


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_monthly_settlement(
    source: str = "manual",
    target_month: Optional[str] = None,
    today: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> dict[str, object]:
    logger.info(f"settlement_job: source={source} month={target_month or 'current'}")
    with session_scope() as session:
        result = settle_all_users(
            session, target_month, today=today, settings=settings
        )
    logger.info(
        f"settlement_job: source={source} month={result['target_month']} "
        f"users={result['processed_users']} settled={result['settled']} "
        f"conflicts={result['conflicts']} failed={result['failed']}"
    )
    return result


def run_due_reflection(
    source: str = "manual",
    today: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> int:
    with session_scope() as session:
        count = reflect_due_all(session, today=today, settings=settings)
    logger.info(f"due_reflection_job: source={source} reflected={count}")
    return count


def run_monthly_snapshot(
    source: str = "manual",
    force: bool = False,
    today: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> int:
    with session_scope() as session:
        written = SnapshotService(session, settings).run(today=today, force=force)
    logger.info(f"snapshot_job: source={source} users={written}")
    return written


class SchedulerManager:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def start(self) -> None:
        run_due_reflection("startup", settings=self.settings)

        trigger = CronTrigger(
            day=self.settings.settlement_day, hour=self.settings.settlement_hour
        )
        self.scheduler.add_job(
            run_monthly_settlement,
            trigger,
            args=["monthly_settlement"],
            kwargs={"settings": self.settings},
            id="monthly_settlement",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = CronTrigger(hour=self.settings.sweep_hour, minute=0)
        self.scheduler.add_job(
            run_due_reflection,
            trigger,
            args=["daily_sweep"],
            kwargs={"settings": self.settings},
            id="due_reflection_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        # the job itself checks for the last day of the month
        trigger = CronTrigger(day="28-31", hour=self.settings.snapshot_hour)
        self.scheduler.add_job(
            run_monthly_snapshot,
            trigger,
            args=["month_end"],
            kwargs={"settings": self.settings},
            id="monthly_snapshot",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: settlement day={self.settings.settlement_day} "
            f"hour={self.settings.settlement_hour}, sweep hour={self.settings.sweep_hour}, "
            f"snapshot hour={self.settings.snapshot_hour} ({self.settings.timezone})"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
