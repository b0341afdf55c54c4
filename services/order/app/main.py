"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
Event Sourcing により、すべての状態変更をイベントとして記録する。

状態を変えるコマンドは x-requestid ヘッダの UUID で冪等にしてある。
バックグラウンドでは次の3つのタスクが動く:
  - 統合イベントの購読 (Redis Streams)
  - アウトボックスの中継
  - 猶予期間ワーカー
"""

import asyncio
import os
from contextlib import asynccontextmanager
from functools import partial
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.shared.eventbus import DEFAULT_STREAM, RedisStreamEventBus
from services.shared.log_config import configure_logging

from . import commands, event_handlers, event_log, event_store, grace_period, queries
from .errors import (
    ConcurrencyConflict,
    InvalidStateTransition,
    OrderNotFound,
    OrderValidationError,
    RequestIdReused,
)
from .idempotency import IdempotencyStore, with_idempotency
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
EVENT_STREAM = os.environ.get("EVENT_STREAM", DEFAULT_STREAM)
GRACE_PERIOD_SECONDS = float(os.environ.get("GRACE_PERIOD_SECONDS", "60"))
ORDER_APPROVAL_URI = os.environ.get("ORDER_APPROVAL_URI", commands.DEFAULT_APPROVAL_URI)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
event_bus: RedisStreamEventBus | None = None

idempotency_store = IdempotencyStore(async_session)
create_order = with_idempotency(
    idempotency_store,
    partial(commands.create_order, approval_uri=ORDER_APPROVAL_URI),
    command_type="CreateOrder",
    result_type=commands.OrderSubmission,
)
cancel_order = with_idempotency(
    idempotency_store, commands.cancel_order,
    command_type="CancelOrder", result_type=commands.CommandAccepted,
)
ship_order = with_idempotency(
    idempotency_store, commands.ship_order,
    command_type="ShipOrder", result_type=commands.CommandAccepted,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, event_bus
    configure_logging("order-service")
    await create_schema(engine)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    event_bus = RedisStreamEventBus(redis_pool, group="order-service", stream=EVENT_STREAM)
    event_handlers.register_handlers(event_bus, async_session)

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(event_bus.run(shutdown_event)),
        asyncio.create_task(event_log.run_relay(async_session, event_bus, shutdown_event)),
        asyncio.create_task(grace_period.run_grace_period_worker(
            async_session, event_bus, shutdown_event, GRACE_PERIOD_SECONDS,
        )),
    ]
    yield
    shutdown_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await redis_pool.aclose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────

class UpdateStatusRequest(BaseModel):
    reason: str = ""


def _request_id(x_requestid: str | None) -> UUID:
    if not x_requestid:
        raise HTTPException(400, "x-requestid header is required")
    try:
        return UUID(x_requestid)
    except ValueError:
        raise HTTPException(400, "x-requestid must be a UUID") from None


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders")
async def cmd_create_order(
    req: commands.CreateOrderCommand,
    x_requestid: str | None = Header(default=None),
):
    """注文作成コマンド（同じ x-requestid の再送は最初の結果を返す）"""
    request_id = _request_id(x_requestid)
    try:
        submission = await create_order(request_id, req)
    except OrderValidationError as e:
        raise HTTPException(400, str(e)) from None
    except RequestIdReused as e:
        raise HTTPException(409, str(e)) from None
    await event_log.publish_pending(async_session, event_bus)
    return submission


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: UUID,
    req: UpdateStatusRequest | None = None,
    x_requestid: str | None = Header(default=None),
):
    """注文キャンセルコマンド"""
    request_id = _request_id(x_requestid)
    command = commands.CancelOrderCommand(order_id=order_id, reason=req.reason if req else "")
    try:
        result = await cancel_order(request_id, command)
    except OrderNotFound as e:
        raise HTTPException(404, str(e)) from None
    except (InvalidStateTransition, ConcurrencyConflict, RequestIdReused) as e:
        raise HTTPException(409, str(e)) from None
    await event_log.publish_pending(async_session, event_bus)
    return result


@app.post("/commands/orders/{order_id}/ship")
async def cmd_ship_order(order_id: UUID, x_requestid: str | None = Header(default=None)):
    """出荷コマンド"""
    request_id = _request_id(x_requestid)
    try:
        result = await ship_order(request_id, commands.ShipOrderCommand(order_id=order_id))
    except OrderNotFound as e:
        raise HTTPException(404, str(e)) from None
    except (InvalidStateTransition, ConcurrencyConflict, RequestIdReused) as e:
        raise HTTPException(409, str(e)) from None
    await event_log.publish_pending(async_session, event_bus)
    return result


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_list_orders(buyer_id: str | None = None):
    """注文一覧をリードモデルから取得"""
    async with async_session() as session:
        return await queries.list_orders(session, buyer_id)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: UUID):
    """指定注文をリードモデルから取得"""
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


# ── Event Store (デバッグ用) ─────────────────────

@app.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: UUID):
    """指定集約のイベントを返す"""
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
