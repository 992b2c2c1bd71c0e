"""
Off-ramp Background Job Scheduler
Runs the reconciliation sweep on a fixed interval
"""

import logging
from datetime import datetime, timezone

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.offramp_reconciliation import ReconciliationMonitor

logger = logging.getLogger(__name__)

RECONCILIATION_JOB_ID = "offramp_reconciliation"


class OfframpScheduler:
    """APScheduler wrapper for the reconciliation monitor"""

    def __init__(self, monitor: ReconciliationMonitor, config=None):
        self.monitor = monitor
        self.config = config or Config

        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 90
        }
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def setup_jobs(self):
        interval = self.config.RECONCILIATION_INTERVAL_SECONDS
        self.scheduler.add_job(
            self.monitor.run_reconciliation,
            trigger=IntervalTrigger(seconds=interval, start_date=datetime.now(timezone.utc).replace(microsecond=0)),
            id=RECONCILIATION_JOB_ID,
            name="📊 Off-ramp Reconciliation - Expiry & Stuck Orders",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=90,
            replace_existing=True
        )
        logger.info(f"✅ Off-ramp Reconciliation scheduled every {interval} seconds")

    def start(self):
        if not self.config.RECONCILIATION_ENABLED:
            logger.warning("⚠️ SCHEDULER DISABLED: RECONCILIATION_ENABLED is false")
            return
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ SCHEDULER ENABLED: Off-ramp reconciliation running")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("📴 Off-ramp job scheduler stopped")
