"""
定时任务调度器

运行方式：
    python -m fundify.worker.scheduler
"""

import logging
from datetime import timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fundify.core.config import settings
from fundify.worker.tasks import sweep_abandoned_checkouts

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        sweep_abandoned_checkouts,
        IntervalTrigger(minutes=settings.PENDING_SWEEP_INTERVAL_MINUTES),
        id="pending_checkout_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def main() -> None:
    scheduler = build_scheduler()
    logger.info(
        "Scheduler started. Pending checkout sweep runs every %d minutes.",
        settings.PENDING_SWEEP_INTERVAL_MINUTES,
    )
    scheduler.start()


if __name__ == "__main__":
    main()
