from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.integrations.setup import StockServices
from stockledger.services.lock_manager import StockLockManager
from stockledger.services.stock_engine import StockMutationEngine
from stockledger.services.webhook_processor import WebhookProcessor


def get_services(request: Request) -> StockServices:
    """Services built by the application lifespan."""
    return request.app.state.services


async def get_db(services: StockServices = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with services.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_stock_engine(services: StockServices = Depends(get_services)) -> StockMutationEngine:
    return services.engine


def get_lock_manager(services: StockServices = Depends(get_services)) -> StockLockManager:
    return services.lock_manager


def get_webhook_processor(services: StockServices = Depends(get_services)) -> WebhookProcessor:
    return services.webhooks


def get_secret(services: StockServices = Depends(get_services)) -> str:
    return services.settings.WEBHOOK_SECRET
