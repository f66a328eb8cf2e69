import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from database import session_scope
from services import InstallmentMismatch, ReconciliationService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# (job id, trigger factory, source label, misfire grace seconds)
RECONCILE_JOBS = (
    ("reconcile_daily", lambda: CronTrigger(hour=3, minute=15), "daily_03:15", 3600),
    ("reconcile_hourly_safety", lambda: IntervalTrigger(hours=1), "hourly_safety_net", 300),
)


class SchedulerManager:
    """Runs the installment reconciliation check in the background."""

    def __init__(self, session_factory: sessionmaker[Session], settings: Settings) -> None:
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.last_mismatches: Optional[list[InstallmentMismatch]] = None

    def reconcile(self, source: str = "manual") -> list[InstallmentMismatch]:
        with session_scope(self.session_factory) as session:
            mismatches = ReconciliationService(session).find_installment_mismatches()
        self.last_mismatches = mismatches
        logger.info(f"reconcile_run: source={source} mismatches={len(mismatches)}")
        return mismatches

    def start(self) -> None:
        self.reconcile("startup")
        for job_id, make_trigger, source, grace in RECONCILE_JOBS:
            self.scheduler.add_job(
                self.reconcile,
                make_trigger(),
                args=[source],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )
        self.scheduler.start()
        logger.info(f"scheduler_started: jobs={','.join(job[0] for job in RECONCILE_JOBS)}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
