"""
Wiring of the stock services, called once during application startup.

build_services() creates every service from settings and a session factory
and hands back a StockServices container; the FastAPI lifespan stores it on
app.state and starts/stops its background parts.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from stockledger.core.config import Settings
from stockledger.integrations.base import MarketplaceClient
from stockledger.scheduler import MaintenanceScheduler
from stockledger.services.activity_logger import ActivityLogger
from stockledger.services.idempotency import CacheBackend, DurableBackend, IdempotencyService
from stockledger.services.lock_manager import StockLockManager
from stockledger.services.order_poller import OrderPoller
from stockledger.services.order_reconciler import OrderLifecycleReconciler
from stockledger.services.product_service import ProductMappingResolver, ProductService
from stockledger.services.stock_engine import StockMutationEngine
from stockledger.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass
class StockServices:
    settings: Settings
    session_factory: async_sessionmaker
    audit: ActivityLogger
    lock_manager: StockLockManager
    idempotency: IdempotencyService
    engine: StockMutationEngine
    products: ProductService
    resolver: ProductMappingResolver
    reconciler: OrderLifecycleReconciler
    poller: OrderPoller
    webhooks: WebhookProcessor
    scheduler: MaintenanceScheduler

    async def start(self, run_scheduler: bool = True) -> None:
        self.reconciler.start()
        if run_scheduler:
            self.scheduler.start()

    async def stop(self) -> None:
        self.scheduler.stop()
        await self.reconciler.stop()
        await self.idempotency.close()


def build_cache(settings: Settings) -> Optional[CacheBackend]:
    if not settings.REDIS_URL:
        logger.info("REDIS_URL not set, idempotency checks use the database only")
        return None
    logger.info("Using redis idempotency cache")
    return CacheBackend.from_url(settings.REDIS_URL)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    clients: Iterable[MarketplaceClient] = (),
    cache: Optional[CacheBackend] = None,
) -> StockServices:
    """
    Initialize and wire the stock services. cache defaults to a redis backend
    when REDIS_URL is configured.
    """
    audit = ActivityLogger(session_factory)
    lock_manager = StockLockManager(session_factory, ttl_seconds=settings.STOCK_LOCK_TTL_SECONDS)
    idempotency = IdempotencyService(
        DurableBackend(session_factory),
        cache=cache if cache is not None else build_cache(settings),
        default_ttl=settings.DEFAULT_IDEMPOTENCY_TTL,
    )
    engine = StockMutationEngine.from_settings(settings, session_factory, lock_manager, idempotency, audit)
    resolver = ProductMappingResolver(session_factory)
    reconciler = OrderLifecycleReconciler(
        session_factory,
        engine,
        idempotency,
        resolver,
        audit,
        order_ttl=settings.ORDER_IDEMPOTENCY_TTL,
    )

    poller = OrderPoller(reconciler, lookback_hours=settings.ORDER_LOOKBACK_HOURS)
    for client in clients:
        try:
            poller.register_client(client)
        except ValueError as e:
            logger.error(f"Failed to register marketplace client {client!r}: {e}")

    return StockServices(
        settings=settings,
        session_factory=session_factory,
        audit=audit,
        lock_manager=lock_manager,
        idempotency=idempotency,
        engine=engine,
        products=ProductService(session_factory, engine),
        resolver=resolver,
        reconciler=reconciler,
        poller=poller,
        webhooks=WebhookProcessor(
            session_factory,
            idempotency,
            reconciler,
            ttl_seconds=settings.WEBHOOK_IDEMPOTENCY_TTL,
        ),
        scheduler=MaintenanceScheduler(settings, lock_manager, idempotency, engine, poller=poller),
    )
