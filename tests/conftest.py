"""Shared fixtures: a file-backed SQLite order database and an in-memory event bus."""

import os
from uuid import UUID, uuid4

# services.order.app.main reads DATABASE_URL at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.order.app import commands, queries
from services.order.app.schema import create_schema


class LocalEventBus:
    """Same publish / subscribe surface as RedisStreamEventBus, kept in memory."""

    def __init__(self):
        self.published = []
        self._queue = []
        self._handlers = {}

    async def publish(self, event):
        self.published.append(event)
        self._queue.append(event)

    def subscribe(self, event_cls, handler):
        self._handlers[event_cls.__name__] = handler

    def of_type(self, event_cls):
        return [e for e in self.published if isinstance(e, event_cls)]

    async def drain(self):
        """Deliver queued events (and whatever their handlers publish) until idle."""
        delivered = 0
        while self._queue:
            event = self._queue.pop(0)
            handler = self._handlers.get(event.event_type)
            if handler is not None:
                await handler(event)
                delivered += 1
        return delivered


@pytest.fixture
def event_bus():
    return LocalEventBus()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        connect_args={"timeout": 30},
    )
    await create_schema(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


def make_create_command(**overrides) -> commands.CreateOrderCommand:
    fields = {
        "buyer_id": f"buyer-{uuid4()}",
        "buyer_name": "Alice",
        "street": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "country": "US",
        "zip_code": "62701",
        "payment_method": "paypal",
        "payment_provider_order_id": "PP-1",
        "items": [
            {"product_id": "p1", "product_name": "Mug", "unit_price": "10", "discount": "2", "units": 2},
            {"product_id": "p2", "product_name": "Hat", "unit_price": "5", "units": 1},
        ],
    }
    fields.update(overrides)
    return commands.CreateOrderCommand(**fields)


@pytest.fixture
def create_command():
    return make_create_command


@pytest.fixture
def place_order(session_factory):
    """Create and commit an order, then return its id."""

    async def place(**overrides) -> UUID:
        command = make_create_command(**overrides)
        async with session_factory() as session:
            await commands.create_order(session, command)
            await session.commit()
        async with session_factory() as session:
            summaries = await queries.list_orders(session, command.buyer_id)
        return UUID(summaries[0]["order_number"])

    return place


@pytest.fixture
def run_command(session_factory):
    """Run one order command in its own committed transaction."""

    async def run(command, *args):
        async with session_factory() as session:
            result = await command(session, *args)
            await session.commit()
        return result

    return run
