"""
Order Service — 統合イベントハンドラ (Saga の Order 側)

受信するイベント:
    OrderStockConfirmed    → 在庫確保   (StockConfirmed)
    OrderStockRejected     → 在庫不足   (StockRejected)
    OrderPaymentSucceeded  → 支払い完了 (Paid)
    OrderPaymentFailed     → 支払い失敗 (PaymentFailed)

イベントの重複・順序の入れ替わりは集約のガードが弾く。
ここでは InvalidStateTransition をログに残して ACK するだけで、Saga 側で順序を保証しない。
同じ注文への同時書き込み (ConcurrencyConflict) は数回やり直し、
それでも駄目なら例外を投げてバスの再配信に任せる。
"""

import logging
from collections.abc import Awaitable, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from services.shared.eventbus import RedisStreamEventBus
from services.shared.integration_events import (
    OrderPaymentFailed,
    OrderPaymentSucceeded,
    OrderStockConfirmed,
    OrderStockRejected,
)

from . import commands, event_log
from .aggregate import OrderAggregate
from .errors import (
    ConcurrencyConflict,
    InvalidStateTransition,
    OrderNotFound,
    OrderValidationError,
)

logger = logging.getLogger(__name__)

Transition = Callable[[AsyncSession], Awaitable[OrderAggregate]]


async def apply_transition(
    session_factory: sessionmaker,
    event_bus: RedisStreamEventBus,
    order_id: UUID,
    transition: Transition,
    max_attempts: int = 3,
) -> OrderAggregate | None:
    """
    1つの遷移を1トランザクションで実行し、コミット後にアウトボックスを中継する。
    遷移が拒否された場合は None を返す。
    """
    for attempt in range(1, max_attempts + 1):
        try:
            async with session_factory() as session:
                agg = await transition(session)
                await session.commit()
        except (InvalidStateTransition, OrderNotFound) as e:
            logger.warning("Ignoring event for order %s: %s", order_id, e)
            return None
        except OrderValidationError as e:
            logger.error("Rejected invalid event data for order %s: %s", order_id, e)
            return None
        except ConcurrencyConflict:
            if attempt == max_attempts:
                raise
            logger.info("Order %s changed concurrently, retrying (%d/%d)", order_id, attempt, max_attempts)
            continue
        break

    logger.info("Order %s is now %s", agg.id, agg.status.value)
    await event_log.publish_pending(session_factory, event_bus)
    return agg


def make_stock_confirmed_handler(session_factory: sessionmaker, event_bus: RedisStreamEventBus):
    async def handle(event: OrderStockConfirmed) -> None:
        logger.info("Handling integration event: %s - (%s)", event.id, event.event_type)
        await apply_transition(
            session_factory, event_bus, event.order_id,
            lambda session: commands.confirm_stock(
                session, event.order_id, event.payment_provider_order_id,
            ),
        )

    return handle


def make_stock_rejected_handler(session_factory: sessionmaker, event_bus: RedisStreamEventBus):
    async def handle(event: OrderStockRejected) -> None:
        logger.info("Handling integration event: %s - (%s)", event.id, event.event_type)
        await apply_transition(
            session_factory, event_bus, event.order_id,
            lambda session: commands.reject_stock(
                session, event.order_id, event.rejected_product_ids,
            ),
        )

    return handle


def make_payment_succeeded_handler(session_factory: sessionmaker, event_bus: RedisStreamEventBus):
    async def handle(event: OrderPaymentSucceeded) -> None:
        logger.info("Handling integration event: %s - (%s)", event.id, event.event_type)
        await apply_transition(
            session_factory, event_bus, event.order_id,
            lambda session: commands.mark_payment_succeeded(session, event.order_id),
        )

    return handle


def make_payment_failed_handler(session_factory: sessionmaker, event_bus: RedisStreamEventBus):
    async def handle(event: OrderPaymentFailed) -> None:
        logger.info("Handling integration event: %s - (%s)", event.id, event.event_type)
        await apply_transition(
            session_factory, event_bus, event.order_id,
            lambda session: commands.mark_payment_failed(session, event.order_id),
        )

    return handle


def register_handlers(event_bus: RedisStreamEventBus, session_factory: sessionmaker) -> None:
    """ディスパッチテーブルに Order Service のハンドラを登録する。"""
    event_bus.subscribe(OrderStockConfirmed, make_stock_confirmed_handler(session_factory, event_bus))
    event_bus.subscribe(OrderStockRejected, make_stock_rejected_handler(session_factory, event_bus))
    event_bus.subscribe(OrderPaymentSucceeded, make_payment_succeeded_handler(session_factory, event_bus))
    event_bus.subscribe(OrderPaymentFailed, make_payment_failed_handler(session_factory, event_bus))
