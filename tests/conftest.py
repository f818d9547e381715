"""
Shared fixtures: an in-memory SQLite database per test and an httpx client
bound to the ASGI app. Settings are read once at import, so the environment
is prepared before anything from orderflow is imported.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["BROADCAST_BACKEND"] = "memory"
os.environ["METRICS_ENABLED"] = "false"
os.environ["OPT_LOCK_BASE_DELAY_MS"] = "1"
os.environ["OPT_LOCK_JITTER_MS"] = "1"

import httpx
import pytest
import pytest_asyncio

import orderflow.models  # noqa: E402,F401
from orderflow.db.database import AsyncSessionLocal, Base, engine
from orderflow.main import app
from orderflow.services.broadcast import BroadcastChannel


def order_payload(**overrides) -> dict:
    payload = {
        "user_id": "user-1",
        "restaurant_id": "rest-1",
        "restaurant_name": "Karachi Kitchen",
        "restaurant_slug": "karachi-kitchen",
        "items": [
            {"item_id": "item-biryani", "name": "Chicken Biryani", "price": 850.0, "quantity": 2},
            {"item_id": "item-raita", "name": "Raita", "price": 150.0, "quantity": 1},
        ],
        "total_price": 1850.0,
        "payment_method": "EasyPaisa",
        "transaction_id": "TXN-1001",
        "customer_notes": "",
    }
    payload.update(overrides)
    return payload


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # aiosqlite connections belong to the loop that opened them
    await engine.dispose()


@pytest.fixture
def broadcast():
    channel = BroadcastChannel()
    app.state.broadcast = channel
    return channel


@pytest_asyncio.fixture
async def client(db, broadcast):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
