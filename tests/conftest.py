import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

os.environ.setdefault("MONGODB_DB_NAME", "credit_ledger_test")
os.environ.setdefault("LEDGER_SERVICE_TOKEN", "test-service-token")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("LEDGER_LOCK_BACKEND", "local")


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test, with every document model bound to it."""
    from creditledger.db.init import init_db
    client = AsyncMongoMockClient()
    await init_db(client=client, db_name="credit_ledger_test")
    yield client


@pytest.fixture
def settings():
    from creditledger.core.config import get_settings
    return get_settings()


@pytest_asyncio.fixture
async def ledger(db, settings):
    from creditledger.services.ledger import build_ledger
    return build_ledger(settings)


@pytest.fixture
def service_headers() -> dict:
    return {"X-Service-Token": "test-service-token"}


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": "Bearer test-cron-secret"}


@pytest_asyncio.fixture
async def client(ledger) -> AsyncGenerator[AsyncClient, None]:
    from creditledger.main import app
    app.state.ledger = ledger
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
