"""
Shared — 統合イベント定義 (Integration Events)

サービス間でやり取りされる「事実」を定義する。
統合イベントは不変(immutable)で、少なくとも1回(at-least-once)配信される。
そのため受信側は重複・順序の入れ替わりを前提に処理しなければならない。

ワイヤ形式:
    {"event_type": "<クラス名>", "data": "<モデルの JSON>"}
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntegrationEvent(BaseModel):
    """すべての統合イベントの基底。ID と作成日時は自動生成される。"""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    creation_date: datetime = Field(default_factory=_utcnow)

    @property
    def event_type(self) -> str:
        return type(self).__name__


# ── Order Service が発行するイベント ──────────────


class OrderStarted(IntegrationEvent):
    """注文が受け付けられた（Basket Service がバスケットを空にする）"""
    buyer_id: str


class OrderStockItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    units: int


class OrderStatusChangedToAwaitingValidation(IntegrationEvent):
    """猶予期間が過ぎ、在庫確認待ちになった"""
    order_id: UUID
    order_stock_items: list[OrderStockItem]


class OrderStatusChangedToStockConfirmed(IntegrationEvent):
    """在庫が確保された（Payment Service が決済を確定する）"""
    order_id: UUID
    status: str
    buyer_name: str
    buyer_identity: str
    payment_provider_order_id: str | None = None


class OrderStatusChangedToPaid(IntegrationEvent):
    order_id: UUID
    status: str
    buyer_name: str
    buyer_identity: str


class OrderStatusChangedToCancelled(IntegrationEvent):
    order_id: UUID
    status: str
    buyer_name: str
    buyer_identity: str


# ── 在庫確認 (外部サービス) が発行するイベント ──────


class OrderStockConfirmed(IntegrationEvent):
    order_id: UUID
    payment_provider_order_id: str | None = None


class OrderStockRejected(IntegrationEvent):
    order_id: UUID
    rejected_product_ids: list[str] = Field(default_factory=list)


# ── Payment Service が発行するイベント ────────────


class OrderPaymentSucceeded(IntegrationEvent):
    order_id: UUID


class OrderPaymentFailed(IntegrationEvent):
    order_id: UUID


EVENT_TYPES: dict[str, type[IntegrationEvent]] = {
    cls.__name__: cls
    for cls in (
        OrderStarted,
        OrderStatusChangedToAwaitingValidation,
        OrderStatusChangedToStockConfirmed,
        OrderStatusChangedToPaid,
        OrderStatusChangedToCancelled,
        OrderStockConfirmed,
        OrderStockRejected,
        OrderPaymentSucceeded,
        OrderPaymentFailed,
    )
}


def serialize(event: IntegrationEvent) -> dict[str, str]:
    """イベントをストリームのフィールド形式に変換する。"""
    return {"event_type": event.event_type, "data": event.model_dump_json()}


def deserialize(event_type: str, data: str) -> IntegrationEvent:
    """フィールド形式からイベントを復元する。未知のイベントは KeyError。"""
    return EVENT_TYPES[event_type].model_validate_json(data)
