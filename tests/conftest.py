import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Settings are cached on first use: configure before importing the app.
os.environ.setdefault("MONGODB_DB_NAME", "fulfillment_test")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("PAYMENT_GATEWAY", "fake")
os.environ.setdefault("REMOTE_STORE", "memory")
os.environ.setdefault("BACKGROUND_MODE", "off")
os.environ.setdefault("WEBHOOK_SECRET", "")

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


@pytest_asyncio.fixture(autouse=True)
async def db() -> AsyncGenerator[None, None]:
    """Fresh in-memory MongoDB per test."""
    from fulfillment.db.init import init_db
    await init_db(client=AsyncMongoMockClient())
    yield


@pytest.fixture
def remote():
    from fulfillment.remote.memory import InMemoryRemoteStore
    return InMemoryRemoteStore()


@pytest.fixture
def gateway():
    from fulfillment.gateway.fake import FakeGateway
    return FakeGateway()


@pytest_asyncio.fixture
async def client(remote, gateway) -> AsyncGenerator[AsyncClient, None]:
    from fulfillment.main import app, install_components
    install_components(app, remote=remote, gateway=gateway)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return dict(ADMIN_HEADERS)
