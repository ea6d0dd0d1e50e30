import pytest
from httpx import ASGITransport, AsyncClient

from stockledger.main import create_app


@pytest.fixture
def app(settings, services):
    return create_app(settings=settings, services=services, run_scheduler=False)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
