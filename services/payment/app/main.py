"""
Payment Service — FastAPI エントリーポイント

DB を持たないサービス。Redis Streams で OrderStatusChangedToStockConfirmed を購読し、
決済を確定して結果のイベントを発行する。

┌───────────────┐ StockConfirmed  ┌─────────────────┐  capture   ┌────────┐
│ Order Service │ ──── Redis ───▶ │ Payment Service │ ─────────▶ │ PayPal │
│               │ ◀─── Redis ──── │                 │            └────────┘
└───────────────┘ PaymentSucceeded/Failed
"""

import asyncio
import os
from contextlib import asynccontextmanager
from decimal import Decimal

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from services.shared.eventbus import DEFAULT_STREAM, RedisStreamEventBus
from services.shared.log_config import configure_logging

from . import handlers
from .config import PaymentOptions
from .gateway import GatewayFailure, PayPalHttpGateway, build_gateway
from .ordering_client import OrderingApiClient
from .reconciler import PaymentCaptureReconciler

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
EVENT_STREAM = os.environ.get("EVENT_STREAM", DEFAULT_STREAM)
ORDERING_SERVICE_URL = os.environ.get("ORDERING_SERVICE_URL")

options = PaymentOptions.from_env()
gateway = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global gateway
    configure_logging("payment-service")

    http_client = httpx.AsyncClient(timeout=30.0)
    gateway = build_gateway(options, http_client)
    reconciler = PaymentCaptureReconciler(gateway, timeout=options.capture_timeout_seconds)
    ordering_client = (
        OrderingApiClient(ORDERING_SERVICE_URL, http_client) if ORDERING_SERVICE_URL else None
    )

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    event_bus = RedisStreamEventBus(redis_pool, group="payment-service", stream=EVENT_STREAM)
    handlers.register_handlers(event_bus, reconciler, ordering_client)

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(event_bus.run(shutdown_event))
    yield
    shutdown_event.set()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    await http_client.aclose()
    await redis_pool.aclose()


app = FastAPI(title="Payment Service", lifespan=lifespan)


class CreatePaypalOrderRequest(BaseModel):
    total: Decimal
    currency: str | None = None
    return_url: str | None = None
    cancel_url: str | None = None


@app.post("/api/paypal/orders")
async def create_paypal_order(req: CreatePaypalOrderRequest):
    """チェックアウト用の PayPal 注文を作る（承認後の ID を注文作成時に渡す）"""
    if not isinstance(gateway, PayPalHttpGateway):
        raise HTTPException(400, "PayPal is not configured on the server.")
    if req.total <= 0:
        raise HTTPException(400, "Total amount must be greater than zero.")

    try:
        paypal_order_id, approval_link = await gateway.create_order(
            req.total,
            req.currency or options.currency_code,
            req.return_url,
            req.cancel_url,
        )
    except GatewayFailure:
        raise HTTPException(400, "Error creating PayPal order.") from None
    return {"paypal_order_id": paypal_order_id, "approval_link": approval_link}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
