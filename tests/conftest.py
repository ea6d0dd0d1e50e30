# tests/conftest.py
import pytest

from stockledger import models  # noqa: F401  registers every table on Base.metadata
from stockledger.core.config import Settings
from stockledger.database import Base, build_engine, build_session_factory
from stockledger.integrations.setup import build_services


@pytest.fixture
def settings(tmp_path):
    """Provide test settings backed by a throwaway SQLite file"""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'stockledger_test.db'}",
        REDIS_URL="",
        STOCK_LOCK_RETRY_ATTEMPTS=3,
        STOCK_LOCK_RETRY_BASE_DELAY=0.001,
        STOCK_LOCK_RETRY_MAX_DELAY=0.01,
        WEBHOOK_SECRET="test_secret",
        ORDER_POLL_ENABLED=False,
    )


@pytest.fixture(scope="function")
async def test_engine(settings):
    """Create and configure the test database engine (function-scoped)."""
    engine = build_engine(settings.DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for assertions"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def services(settings, session_factory):
    services = build_services(settings, session_factory)
    yield services
    await services.stop()


@pytest.fixture
def stock_engine(services):
    return services.engine


@pytest.fixture
def lock_manager(services):
    return services.lock_manager


@pytest.fixture
def idempotency(services):
    return services.idempotency


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture
def make_product(services):
    """Factory: create a product whose opening stock is booked through the ledger"""
    counter = {"n": 0}

    async def _make(stock: int = 0, sku: str = None, title: str = "Test Guitar", location: str = None):
        counter["n"] += 1
        product = await services.products.create_product(
            sku=sku or f"TG-{counter['n']:03d}",
            title=title,
            location=location,
            initial_stock=stock,
            actor="test",
        )
        return product

    return _make


@pytest.fixture
def map_sku(services):
    """Factory: map a marketplace SKU onto a product"""

    async def _map(marketplace: str, sku: str, product_id: int, sync_stock: bool = True):
        return await services.resolver.add_mapping(marketplace, sku, product_id, sync_stock=sync_stock)

    return _map
