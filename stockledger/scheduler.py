"""
Maintenance jobs that run inside the application process.

Nothing is scheduled on import; the application lifespan calls start() and
stop() explicitly.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from stockledger.core.config import Settings
from stockledger.services.idempotency import IdempotencyService
from stockledger.services.lock_manager import StockLockManager
from stockledger.services.order_poller import OrderPoller
from stockledger.services.stock_engine import StockMutationEngine

logger = logging.getLogger(__name__)


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully at {datetime.now()}")


class MaintenanceScheduler:

    def __init__(
        self,
        settings: Settings,
        lock_manager: StockLockManager,
        idempotency: IdempotencyService,
        engine: StockMutationEngine,
        poller: Optional[OrderPoller] = None,
    ):
        self.settings = settings
        self.lock_manager = lock_manager
        self.idempotency = idempotency
        self.engine = engine
        self.poller = poller
        self.scheduler: Optional[AsyncIOScheduler] = None

    # --- jobs ---------------------------------------------------------

    async def sweep_locks_task(self) -> int:
        return await self.lock_manager.sweep_expired()

    async def purge_idempotency_task(self) -> int:
        return await self.idempotency.purge_expired()

    async def low_stock_task(self) -> int:
        threshold = self.settings.LOW_STOCK_THRESHOLD
        products = await self.engine.find_low_stock(threshold)
        for product in products:
            logger.warning(
                f"Low stock: product {product.id} ({product.sku}) has {product.stock_quantity} left "
                f"(threshold {threshold})"
            )
        return len(products)

    async def poll_orders_task(self) -> dict:
        summary = await self.poller.poll()
        logger.info(f"Order poll published {summary['published']} order(s), {summary['errors']} marketplace error(s)")
        return summary

    # --- lifecycle ----------------------------------------------------

    def create_scheduler(self, interval: Optional[int] = None) -> AsyncIOScheduler:
        """
        interval overrides the lock sweep period (seconds); the other jobs use
        their own settings.
        """
        scheduler = AsyncIOScheduler()
        scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

        scheduler.add_job(
            self.sweep_locks_task,
            IntervalTrigger(seconds=interval or self.settings.LOCK_SWEEP_INTERVAL_SECONDS),
            id="sweep_stock_locks",
            name="Sweep Expired Stock Locks",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.add_job(
            self.purge_idempotency_task,
            IntervalTrigger(seconds=self.settings.IDEMPOTENCY_PURGE_INTERVAL_SECONDS),
            id="purge_idempotency",
            name="Purge Expired Idempotency Records",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.add_job(
            self.low_stock_task,
            IntervalTrigger(seconds=self.settings.LOW_STOCK_CHECK_INTERVAL_SECONDS),
            id="low_stock_check",
            name="Low Stock Check",
            replace_existing=True,
            max_instances=1,
        )

        if self.settings.ORDER_POLL_ENABLED and self.poller is not None and self.poller.clients:
            scheduler.add_job(
                self.poll_orders_task,
                IntervalTrigger(seconds=self.settings.ORDER_POLL_INTERVAL_SECONDS),
                id="poll_orders",
                name="Poll Marketplace Orders",
                replace_existing=True,
                max_instances=1,
                misfire_grace_time=self.settings.ORDER_POLL_INTERVAL_SECONDS,
            )
            logger.info(f"Order polling every {self.settings.ORDER_POLL_INTERVAL_SECONDS}s for {list(self.poller.clients)}")
        else:
            logger.info("Order polling is disabled. Set ORDER_POLL_ENABLED=true and register a client to enable")

        return scheduler

    def start(self, interval: Optional[int] = None) -> None:
        if self.scheduler is not None and self.scheduler.running:
            return

        self.scheduler = self.create_scheduler(interval)
        self.scheduler.start()
        logger.info("Scheduler started successfully")

        for job in self.scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")

    def stop(self) -> None:
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped successfully")
        self.scheduler = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def get_status(self) -> dict:
        """Get current scheduler status and job information"""
        if self.scheduler is None:
            return {"status": "not_initialized", "jobs": []}

        return {
            "status": "running" if self.scheduler.running else "stopped",
            "jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                    "trigger": str(job.trigger),
                }
                for job in self.scheduler.get_jobs()
            ],
        }
