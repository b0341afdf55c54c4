"""
Basket Service — FastAPI エントリーポイント

購入者のバスケットを Redis に保持する。
OrderStarted を購読し、注文済みのバスケットを削除する。
"""

import asyncio
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException

from services.shared.eventbus import DEFAULT_STREAM, RedisStreamEventBus
from services.shared.log_config import configure_logging

from . import handlers
from .repository import CustomerBasket, RedisBasketRepository

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
EVENT_STREAM = os.environ.get("EVENT_STREAM", DEFAULT_STREAM)

repository: RedisBasketRepository | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global repository
    configure_logging("basket-service")
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    repository = RedisBasketRepository(redis_pool)

    event_bus = RedisStreamEventBus(redis_pool, group="basket-service", stream=EVENT_STREAM)
    handlers.register_handlers(event_bus, repository)

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(event_bus.run(shutdown_event))
    yield
    shutdown_event.set()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    await redis_pool.aclose()


app = FastAPI(title="Basket Service", lifespan=lifespan)


@app.get("/api/basket/{buyer_id}")
async def get_basket(buyer_id: str):
    basket = await repository.get_basket(buyer_id)
    return basket or CustomerBasket(buyer_id=buyer_id)


@app.put("/api/basket/{buyer_id}")
async def update_basket(buyer_id: str, basket: CustomerBasket):
    if basket.buyer_id != buyer_id:
        raise HTTPException(400, "buyer_id does not match the basket")
    return await repository.update_basket(basket)


@app.delete("/api/basket/{buyer_id}")
async def delete_basket(buyer_id: str):
    await repository.delete_basket(buyer_id)
    return {"buyer_id": buyer_id, "deleted": True}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "basket-service"}
