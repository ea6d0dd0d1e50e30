# stockledger/main.py

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stockledger.core.config import Settings, get_settings
from stockledger.core.exceptions import (
    BaseServiceError,
    InsufficientStockError,
    LockContentionError,
    PersistenceFailureError,
    ProductNotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from stockledger.core.logging_config import configure_logging
from stockledger.integrations.setup import StockServices, build_services
from stockledger.routes import health, stock, webhooks

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ProductNotFoundError: 404,
    InsufficientStockError: 409,
    LockContentionError: 423,
    ValidationError: 422,
    PersistenceFailureError: 503,
    WebhookSignatureError: 401,
}


def _error_response(status_code: int, exc: BaseServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_code": exc.error_code},
    )


def register_exception_handlers(app: FastAPI) -> None:
    for exc_class, status_code in STATUS_CODES.items():
        async def handler(request: Request, exc: BaseServiceError, status_code: int = status_code):
            return _error_response(status_code, exc)

        app.add_exception_handler(exc_class, handler)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[StockServices] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """
    Application factory. Tests pass their own services (built on a throwaway
    database) and usually disable the scheduler.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)

        if services is None:
            from stockledger.database import async_session
            app.state.services = build_services(settings, async_session)
        else:
            app.state.services = services

        await app.state.services.start(run_scheduler=run_scheduler)
        logger.info(f"stockledger started ({settings.ENVIRONMENT})")
        try:
            yield
        finally:
            await app.state.services.stop()
            logger.info("stockledger stopped")

    app = FastAPI(title="Stock Ledger", debug=settings.DEBUG, lifespan=lifespan)
    if services is not None:
        # Available before the lifespan runs, e.g. under a transport without lifespan support
        app.state.services = services

    register_exception_handlers(app)

    app.include_router(stock.router)
    app.include_router(webhooks.router)
    app.include_router(health.router)

    return app


app = create_app()
