import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from classifier import LLMBackend
from config import get_settings
from database import session_scope
from feed import FeedClient
from messaging import Messenger
from month_end import reconcile_all
from notifications import make_notifier
from periods import previous_month
from sync import SyncEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        feed: Optional[FeedClient] = None,
        backend: Optional[LLMBackend] = None,
        messenger: Optional[Messenger] = None,
    ) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.feed = feed
        self.backend = backend
        self.messenger = messenger

    def _run_month_end(self, source: str = "manual") -> None:
        period = previous_month()
        logger.info(
            f"scheduler_month_end: source={source} period={period.year}-{period.month:02d}"
        )
        with session_scope() as session:
            count = reconcile_all(session, self.messenger, period.year, period.month)
            logger.info(f"scheduler_month_end: source={source} budgets={count}")

    def _run_sync(self, source: str = "manual") -> None:
        if self.feed is None:
            logger.info(f"scheduler_sync_skipped: source={source} reason=no_feed")
            return
        with session_scope() as session:
            engine = SyncEngine(
                session, self.feed, self.backend, make_notifier(self.messenger)
            )
            count = engine.sync_all()
            logger.info(f"scheduler_sync: source={source} items_synced={count}")

    def start(self) -> None:
        trigger = CronTrigger(day=1, hour=0, minute=5)
        self.scheduler.add_job(
            self._run_month_end,
            trigger,
            args=["monthly_day1"],
            id="month_end_monthly",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_sync,
            trigger,
            args=["hourly_safety_net"],
            id="sync_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly reconciliation and hourly sync")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
