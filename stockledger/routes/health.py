from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from stockledger.dependencies import get_services
from stockledger.integrations.setup import StockServices

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "stockledger"}


@router.get("/health/db")
async def database_health(services: StockServices = Depends(get_services)):
    """Check database connectivity and background workers"""
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "unhealthy", "database": "error", "error": str(e)}

    return {
        "status": "healthy",
        "database": "connected",
        "reconciler": "running" if services.reconciler.running else "stopped",
        "pending_order_events": services.reconciler.queue.qsize(),
        "scheduler": services.scheduler.get_status(),
    }
