import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from pending import PendingConfirmationStore


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, pending: PendingConfirmationStore) -> None:
        settings = get_settings()
        self.pending = pending
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        # Sweep a few times per TTL so expired batches never linger long.
        self.sweep_every_secs = max(30, settings.pending_ttl_secs // 4)

    def _run_job(self, source: str = "manual") -> int:
        count = self.pending.sweep()
        logger.info(f"scheduler_run: source={source} pending_expired={count}")
        return count

    def start(self) -> None:
        trigger = IntervalTrigger(seconds=self.sweep_every_secs)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["pending_sweep"],
            id="pending_sweep",
            replace_existing=True,
            misfire_grace_time=60,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with pending sweep every {self.sweep_every_secs}s"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
