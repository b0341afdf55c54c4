"""
Order Service — コマンドハンドラ (CQRS の Write 側)

CQRS パターンでは、書き込み(Command)と読み取り(Query)を分離する。
コマンドは集約の遷移メソッドでドメインイベントを発生させ、イベントストアに保存する。
同時にリードモデルを更新し、他サービスへ知らせる統合イベントをアウトボックスに積む。

ここの関数はコミットしない。呼び出し側 (冪等ゲート / イベントハンドラ) が
1つのトランザクションとしてコミットする。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.integration_events import (
    OrderStarted,
    OrderStatusChangedToAwaitingValidation,
    OrderStatusChangedToCancelled,
    OrderStatusChangedToPaid,
    OrderStatusChangedToStockConfirmed,
    OrderStockItem,
)

from . import event_log, event_store
from .aggregate import Address, OrderAggregate, OrderItem
from .errors import OrderNotFound
from .schema import TIMESTAMP

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_URI = "user/orders"


# ── コマンド / 結果モデル ────────────────────────


class OrderItemCommand(BaseModel):
    product_id: str
    product_name: str
    unit_price: Decimal
    discount: Decimal = Decimal("0")
    units: int
    picture_url: str = ""


class CreateOrderCommand(BaseModel):
    buyer_id: str
    buyer_name: str
    street: str
    city: str
    state: str
    country: str
    zip_code: str
    payment_method: str
    payment_provider_order_id: str | None = None
    items: list[OrderItemCommand]


class OrderSubmission(BaseModel):
    order_submitted: bool
    approval_uri: str


class CancelOrderCommand(BaseModel):
    order_id: UUID
    reason: str = ""


class ShipOrderCommand(BaseModel):
    order_id: UUID


class CommandAccepted(BaseModel):
    accepted: bool


# ── 注文作成 ─────────────────────────────────────


async def create_order(
    session: AsyncSession,
    command: CreateOrderCommand,
    approval_uri: str = DEFAULT_APPROVAL_URI,
) -> OrderSubmission:
    """
    注文作成コマンド

    1. 集約を生成（ここで住所・明細を検査する。失敗すれば何も保存しない）
    2. OrderSubmitted イベントをイベントストアに追記
    3. リードモデルに INSERT
    4. OrderStarted をアウトボックスに積む（Basket Service がバスケットを空にする）
    """
    agg = OrderAggregate.create(
        order_id=uuid4(),
        buyer_id=command.buyer_id,
        buyer_name=command.buyer_name,
        address=Address(
            command.street, command.city, command.state, command.country, command.zip_code,
        ),
        payment_method=command.payment_method,
        items=[
            OrderItem(
                item.product_id, item.product_name, item.unit_price,
                item.discount, item.units, item.picture_url,
            )
            for item in command.items
        ],
        checkout_payment_reference=command.payment_provider_order_id,
    )
    logger.info("Creating Order %s for buyer %s (total %s)", agg.id, agg.buyer_id, agg.total)

    await event_store.append_changes(session, agg)

    now = datetime.now(timezone.utc)
    await session.execute(
        text("""
            INSERT INTO orders_read_model
                (id, buyer_id, buyer_name, street, city, state, country, zip_code,
                 payment_method, items, total, status, description,
                 payment_provider_order_id, created_at, updated_at)
            VALUES
                (:id, :buyer_id, :buyer_name, :street, :city, :state, :country, :zip_code,
                 :payment_method, :items, :total, :status, '',
                 NULL, :created_at, :now)
        """).bindparams(
            bindparam("created_at", type_=TIMESTAMP),
            bindparam("now", type_=TIMESTAMP),
        ),
        {
            "id": str(agg.id),
            "buyer_id": agg.buyer_id,
            "buyer_name": agg.buyer_name,
            "street": agg.address.street,
            "city": agg.address.city,
            "state": agg.address.state,
            "country": agg.address.country,
            "zip_code": agg.address.zip_code,
            "payment_method": agg.payment_method,
            "items": json.dumps([
                {
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "unit_price": float(item.unit_price),
                    "discount": float(item.discount),
                    "units": item.units,
                    "picture_url": item.picture_url,
                }
                for item in agg.items
            ]),
            "total": float(agg.total),
            "status": agg.status.value,
            "created_at": agg.created_at,
            "now": now,
        },
    )

    await event_log.save_event(session, OrderStarted(buyer_id=agg.buyer_id))

    return OrderSubmission(order_submitted=True, approval_uri=approval_uri)


# ── 状態遷移コマンド ─────────────────────────────


async def load_order(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    """イベントから集約を再構築する。イベントがなければ OrderNotFound。"""
    events = await event_store.load_events(session, order_id)
    if not events:
        raise OrderNotFound(order_id)
    return OrderAggregate.from_events(events)


async def _save(session: AsyncSession, agg: OrderAggregate) -> None:
    await event_store.append_changes(session, agg)

    await session.execute(
        text("""
            UPDATE orders_read_model
            SET status = :status,
                description = :description,
                payment_provider_order_id = :payment_provider_order_id,
                updated_at = :now
            WHERE id = :id
        """).bindparams(bindparam("now", type_=TIMESTAMP)),
        {
            "id": str(agg.id),
            "status": agg.status.value,
            "description": agg.description,
            "payment_provider_order_id": agg.payment_provider_order_id,
            "now": datetime.now(timezone.utc),
        },
    )


async def set_awaiting_validation(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    """猶予期間が終わった注文を在庫確認待ちにする。"""
    agg = await load_order(session, order_id)
    agg.set_awaiting_validation()
    await _save(session, agg)
    await event_log.save_event(session, OrderStatusChangedToAwaitingValidation(
        order_id=agg.id,
        order_stock_items=[
            OrderStockItem(product_id=item.product_id, units=item.units)
            for item in agg.items
        ],
    ))
    return agg


async def confirm_stock(
    session: AsyncSession,
    order_id: UUID,
    payment_provider_order_id: str | None = None,
) -> OrderAggregate:
    """
    在庫確保コマンド

    決済プロバイダの注文 ID を載せた OrderStatusChangedToStockConfirmed を発行し、
    Payment Service に決済の確定(capture)を依頼する。
    """
    agg = await load_order(session, order_id)
    agg.confirm_stock(payment_provider_order_id)
    await _save(session, agg)
    await event_log.save_event(session, OrderStatusChangedToStockConfirmed(
        order_id=agg.id,
        status=agg.status.value,
        buyer_name=agg.buyer_name,
        buyer_identity=agg.buyer_id,
        payment_provider_order_id=agg.payment_provider_order_id,
    ))
    return agg


async def reject_stock(
    session: AsyncSession,
    order_id: UUID,
    rejected_product_ids: list[str],
) -> OrderAggregate:
    agg = await load_order(session, order_id)
    agg.reject_stock(rejected_product_ids)
    await _save(session, agg)
    return agg


async def mark_payment_succeeded(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    agg = await load_order(session, order_id)
    agg.mark_payment_succeeded()
    await _save(session, agg)
    await event_log.save_event(session, OrderStatusChangedToPaid(
        order_id=agg.id,
        status=agg.status.value,
        buyer_name=agg.buyer_name,
        buyer_identity=agg.buyer_id,
    ))
    return agg


async def mark_payment_failed(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    agg = await load_order(session, order_id)
    agg.mark_payment_failed()
    await _save(session, agg)
    return agg


async def ship_order(session: AsyncSession, command: ShipOrderCommand) -> CommandAccepted:
    agg = await load_order(session, command.order_id)
    agg.ship()
    await _save(session, agg)
    return CommandAccepted(accepted=True)


async def cancel_order(session: AsyncSession, command: CancelOrderCommand) -> CommandAccepted:
    """注文キャンセルコマンド（購入者が在庫不足・決済失敗の注文を取り消す）"""
    agg = await load_order(session, command.order_id)
    agg.cancel(command.reason)
    await _save(session, agg)
    await event_log.save_event(session, OrderStatusChangedToCancelled(
        order_id=agg.id,
        status=agg.status.value,
        buyer_name=agg.buyer_name,
        buyer_identity=agg.buyer_id,
    ))
    return CommandAccepted(accepted=True)
