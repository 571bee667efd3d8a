"""Background job scheduler for the checkout ledger core"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from services.order_expiry_service import OrderExpiryService

logger = logging.getLogger(__name__)

ORDER_EXPIRY_JOB_ID = "order_expiry_sweep"


class PaymentScheduler:
    """Runs the optional order-expiry sweep outside the request path"""

    def __init__(self, expiry_service: Optional[OrderExpiryService] = None, interval_seconds: Optional[int] = None):
        self.expiry_service = expiry_service or OrderExpiryService()
        self.interval_seconds = interval_seconds or Config.ORDER_EXPIRY_SWEEP_INTERVAL_SECONDS

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
        """Register the expiry sweep, replacing any previous registration"""
        self.scheduler.add_job(
            self.run_order_expiry_sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc),
            id=ORDER_EXPIRY_JOB_ID,
            name="⏰ Order Expiry Sweep - pending orders past their payment window",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"✅ Order expiry sweep scheduled every {self.interval_seconds} seconds")

    async def run_order_expiry_sweep(self) -> Dict[str, Any]:
        """Run one sweep in a worker thread so the event loop is never blocked on the database"""
        results = await asyncio.to_thread(self.expiry_service.expire_stale_orders)
        if results["errors"]:
            logger.error(f"❌ ORDER_EXPIRY_SWEEP: {len(results['errors'])} error(s): {results['errors']}")
        elif results["expired_orders"]:
            logger.info(f"⏰ ORDER_EXPIRY_SWEEP: expired {len(results['expired_orders'])} order(s)")
        return results

    def start(self):
        """Start the scheduler (requires a running event loop)"""
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Registered scheduler jobs: {[job.id for job in jobs]}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")


async def main():
    """Standalone worker: create tables, then sweep until cancelled"""
    from database import check_connection, create_tables
    from utils.logging_config import configure_logging

    configure_logging()
    Config.log_environment_config()
    if not check_connection():
        raise SystemExit("Database unreachable")
    create_tables()

    payment_scheduler = PaymentScheduler()
    payment_scheduler.start()
    logger.info(f"🚀 Expiry worker started at {datetime.now(timezone.utc).isoformat()}")
    try:
        await asyncio.Event().wait()
    finally:
        payment_scheduler.stop()


if __name__ == "__main__":
    asyncio.run(main())
