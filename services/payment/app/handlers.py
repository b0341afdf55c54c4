"""
Payment Service — 統合イベントハンドラ (Saga の Payment 側)

OrderStatusChangedToStockConfirmed を受け取ったら決済を確定(capture)し、
OrderPaymentSucceeded か OrderPaymentFailed のどちらか1つを必ず発行する。

同じイベントが再配信されたとき:
  - Order Service に問い合わせて、注文がもう StockConfirmed でなければ何もしない
  - すれ違いで2回 capture しても PayPal-Request-Id で PayPal 側が1回にまとめる
  - 2通目の結果イベントは Order Service の集約ガードが弾く
"""

import logging

from services.shared.eventbus import RedisStreamEventBus
from services.shared.integration_events import (
    IntegrationEvent,
    OrderPaymentFailed,
    OrderPaymentSucceeded,
    OrderStatusChangedToStockConfirmed,
)

from .ordering_client import OrderingApiClient
from .reconciler import PaymentCaptureReconciler

logger = logging.getLogger(__name__)

STOCK_CONFIRMED = "StockConfirmed"


def make_stock_confirmed_handler(
    event_bus: RedisStreamEventBus,
    reconciler: PaymentCaptureReconciler,
    ordering_client: OrderingApiClient | None = None,
):
    async def handle(event: OrderStatusChangedToStockConfirmed) -> None:
        logger.info("Handling integration event: %s - (%s)", event.id, event.event_type)

        reference = event.payment_provider_order_id
        if ordering_client is not None:
            order = await ordering_client.get_order(event.order_id)
            if order is not None:
                if order.status != STOCK_CONFIRMED:
                    logger.info(
                        "Order %s is %s, not %s; skipping capture",
                        event.order_id, order.status, STOCK_CONFIRMED,
                    )
                    return
                reference = reference or order.payment_provider_order_id

        result = await reconciler.capture(reference)

        follow_up: IntegrationEvent
        if result.succeeded:
            follow_up = OrderPaymentSucceeded(order_id=event.order_id)
        else:
            follow_up = OrderPaymentFailed(order_id=event.order_id)

        logger.info("Publishing integration event: %s - (%s)", follow_up.id, follow_up.event_type)
        await event_bus.publish(follow_up)

    return handle


def register_handlers(
    event_bus: RedisStreamEventBus,
    reconciler: PaymentCaptureReconciler,
    ordering_client: OrderingApiClient | None = None,
) -> None:
    event_bus.subscribe(
        OrderStatusChangedToStockConfirmed,
        make_stock_confirmed_handler(event_bus, reconciler, ordering_client),
    )
