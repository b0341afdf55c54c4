"""
Order Service — ドメインイベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
イベントストアには model_dump(mode="json") の結果を保存する。

サービス間で共有する統合イベントは services/shared/integration_events.py にある。
こちらは注文集約の内部でのみ使う。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class OrderItemData(BaseModel):
    product_id: str
    product_name: str
    unit_price: Decimal
    discount: Decimal
    units: int
    picture_url: str = ""


class OrderSubmitted(BaseModel):
    """注文が作成された"""
    order_id: UUID
    buyer_id: str
    buyer_name: str
    street: str
    city: str
    state: str
    country: str
    zip_code: str
    payment_method: str
    checkout_payment_reference: str | None = None
    items: list[OrderItemData]
    timestamp: datetime


class OrderValidationRequested(BaseModel):
    """猶予期間が終わり、在庫確認待ちになった"""
    order_id: UUID
    timestamp: datetime


class OrderStockVerified(BaseModel):
    """在庫が確保された。決済プロバイダの注文 ID はここで初めて紐付く。"""
    order_id: UUID
    payment_provider_order_id: str | None = None
    timestamp: datetime


class OrderStockRefused(BaseModel):
    """在庫が足りなかった"""
    order_id: UUID
    rejected_product_ids: list[str]
    description: str
    timestamp: datetime


class OrderPaid(BaseModel):
    order_id: UUID
    timestamp: datetime


class OrderPaymentRejected(BaseModel):
    order_id: UUID
    timestamp: datetime


class OrderShipped(BaseModel):
    order_id: UUID
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた"""
    order_id: UUID
    reason: str
    timestamp: datetime
