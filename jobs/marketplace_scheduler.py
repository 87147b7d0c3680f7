"""
Marketplace Background Job Scheduler

Two periodic jobs, neither of which owns transaction state between runs:
1. Escrow Release Sweep - release-if-eligible over held transactions past their release date
2. Handover Reconciliation - alert on ownership handovers that never settled locally
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.escrow_release_sweep import run_escrow_release_sweep
from jobs.handover_reconciliation_monitor import run_handover_reconciliation
from config import Config

logger = logging.getLogger(__name__)


class MarketplaceScheduler:
    """APScheduler wrapper for the escrow lifecycle jobs"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the periodic jobs"""
        self.scheduler.add_job(
            run_escrow_release_sweep,
            trigger=IntervalTrigger(minutes=Config.ESCROW_RELEASE_SWEEP_INTERVAL_MINUTES),
            id="escrow_release_sweep",
            name="💰 Escrow Release Sweep",
            replace_existing=True
        )
        logger.info(
            f"✅ Escrow Release Sweep scheduled every {Config.ESCROW_RELEASE_SWEEP_INTERVAL_MINUTES} minutes"
        )

        self.scheduler.add_job(
            run_handover_reconciliation,
            trigger=IntervalTrigger(minutes=Config.HANDOVER_RECONCILIATION_INTERVAL_MINUTES),
            id="handover_reconciliation",
            name="🔍 Handover Reconciliation Monitor",
            replace_existing=True
        )
        logger.info(
            f"✅ Handover Reconciliation scheduled every {Config.HANDOVER_RECONCILIATION_INTERVAL_MINUTES} minutes"
        )

    def start(self):
        """Start the scheduler; must be called from inside a running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active jobs: {job_names}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Marketplace job scheduler stopped")
