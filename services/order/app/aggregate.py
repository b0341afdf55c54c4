"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

遷移メソッド (confirm_stock など): 現在の状態で遷移が許されるか検査し、
    許されればドメインイベントを発生させる。許されなければ InvalidStateTransition。
apply_xxx メソッド: 各イベントを適用して状態を変更する（検査はしない）

状態遷移:
    Submitted → AwaitingValidation → StockConfirmed → Paid → Shipped
                                  ↘ StockRejected   ↘ PaymentFailed
    Shipped / Cancelled 以外からは Cancelled へ遷移できる。
"""

import re
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from uuid import UUID

from . import events
from .errors import InvalidStateTransition, OrderValidationError

PAYMENT_REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class OrderStatus(str, Enum):
    SUBMITTED = "Submitted"
    AWAITING_VALIDATION = "AwaitingValidation"
    STOCK_CONFIRMED = "StockConfirmed"
    STOCK_REJECTED = "StockRejected"
    PAID = "Paid"
    PAYMENT_FAILED = "PaymentFailed"
    SHIPPED = "Shipped"
    CANCELLED = "Cancelled"

    @property
    def rank(self) -> int:
        """状態の順序。遷移は必ずこの値を増やす方向にしか起きない。"""
        return _RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.SHIPPED, OrderStatus.CANCELLED)


_RANK = {
    OrderStatus.SUBMITTED: 1,
    OrderStatus.AWAITING_VALIDATION: 2,
    OrderStatus.STOCK_CONFIRMED: 3,
    OrderStatus.STOCK_REJECTED: 3,
    OrderStatus.PAID: 4,
    OrderStatus.PAYMENT_FAILED: 4,
    OrderStatus.SHIPPED: 5,
    OrderStatus.CANCELLED: 6,
}

CANCELLABLE = (
    OrderStatus.SUBMITTED,
    OrderStatus.AWAITING_VALIDATION,
    OrderStatus.STOCK_CONFIRMED,
    OrderStatus.STOCK_REJECTED,
    OrderStatus.PAID,
    OrderStatus.PAYMENT_FAILED,
)


def validate_payment_reference(reference: str | None) -> str | None:
    """決済プロバイダの注文 ID を検査する。空なら None。"""
    if reference is None or not reference.strip():
        return None
    reference = reference.strip()
    if not PAYMENT_REFERENCE_PATTERN.match(reference):
        raise OrderValidationError(f"Invalid payment provider order id: {reference!r}")
    return reference


def _to_decimal(value, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise OrderValidationError(f"{name} must be a number") from None


# ── 値オブジェクト ───────────────────────────────


@dataclass(frozen=True)
class Address:
    street: str
    city: str
    state: str
    country: str
    zip_code: str

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, str) or not value.strip():
                raise OrderValidationError(f"Address {f.name} is required")


@dataclass
class OrderItem:
    product_id: str
    product_name: str
    unit_price: Decimal
    discount: Decimal
    units: int
    picture_url: str = ""

    def __post_init__(self) -> None:
        self.unit_price = _to_decimal(self.unit_price, "unit_price")
        self.discount = _to_decimal(self.discount, "discount")
        if not str(self.product_id).strip():
            raise OrderValidationError("Order item product_id is required")
        if self.unit_price < 0:
            raise OrderValidationError("Order item unit_price must not be negative")
        if self.discount < 0:
            raise OrderValidationError("Order item discount must not be negative")
        if self.discount > self.unit_price:
            raise OrderValidationError("Order item discount must not exceed unit_price")
        if self.units < 1:
            raise OrderValidationError("Order item units must be at least 1")

    @property
    def total(self) -> Decimal:
        return (self.unit_price - self.discount) * self.units


def _merge_items(items: list[OrderItem]) -> list[OrderItem]:
    """
    同じ商品・同じ単価の明細は1行にまとめる（数量は合算、割引は大きい方）。
    単価が違う明細は別の行のまま残す。
    """
    merged: dict[tuple[str, Decimal], OrderItem] = {}
    for item in items:
        key = (item.product_id, item.unit_price)
        existing = merged.get(key)
        if existing is None:
            merged[key] = OrderItem(
                item.product_id, item.product_name, item.unit_price,
                item.discount, item.units, item.picture_url,
            )
            continue
        if item.discount > existing.discount:
            existing.discount = item.discount
        existing.units += item.units
    return list(merged.values())


# ── 集約 ─────────────────────────────────────────


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    新しく発生したイベントは changes に溜まり、
    コマンドハンドラがイベントストアに追記する。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.buyer_id: str = ""
        self.buyer_name: str = ""
        self.address: Address | None = None
        self.items: list[OrderItem] = []
        self.payment_method: str = ""
        self.checkout_payment_reference: str | None = None
        self.payment_provider_order_id: str | None = None
        self.status: OrderStatus | None = None
        self.description: str = ""
        self.created_at: datetime | None = None
        self.version: int = 0
        self.changes: list[tuple[str, dict]] = []

    @property
    def total(self) -> Decimal:
        return sum((item.total for item in self.items), Decimal("0"))

    # ── 生成 ─────────────────────────────────────

    @classmethod
    def create(
        cls,
        order_id: UUID,
        buyer_id: str,
        buyer_name: str,
        address: Address,
        payment_method: str,
        items: list[OrderItem],
        checkout_payment_reference: str | None = None,
        now: datetime | None = None,
    ) -> "OrderAggregate":
        """注文を作成する。検査に失敗したら OrderValidationError。"""
        if not buyer_id or not buyer_id.strip():
            raise OrderValidationError("buyer_id is required")
        if not buyer_name or not buyer_name.strip():
            raise OrderValidationError("buyer_name is required")
        if not payment_method or not payment_method.strip():
            raise OrderValidationError("payment_method is required")
        if not isinstance(address, Address):
            raise OrderValidationError("address is required")
        if not items:
            raise OrderValidationError("An order needs at least one item")

        event = events.OrderSubmitted(
            order_id=order_id,
            buyer_id=buyer_id,
            buyer_name=buyer_name,
            street=address.street,
            city=address.city,
            state=address.state,
            country=address.country,
            zip_code=address.zip_code,
            payment_method=payment_method,
            checkout_payment_reference=validate_payment_reference(checkout_payment_reference),
            items=[
                events.OrderItemData(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    unit_price=item.unit_price,
                    discount=item.discount,
                    units=item.units,
                    picture_url=item.picture_url,
                )
                for item in _merge_items(items)
            ],
            timestamp=now or datetime.now(timezone.utc),
        )
        agg = cls()
        agg._raise("OrderSubmitted", event)
        return agg

    # ── 状態遷移 ─────────────────────────────────

    def set_awaiting_validation(self, now: datetime | None = None) -> None:
        self._guard((OrderStatus.SUBMITTED,), OrderStatus.AWAITING_VALIDATION)
        self._raise("OrderValidationRequested", events.OrderValidationRequested(
            order_id=self.id, timestamp=now or datetime.now(timezone.utc),
        ))

    def confirm_stock(
        self,
        payment_provider_order_id: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """
        在庫確保。決済プロバイダの注文 ID はこの遷移でのみ設定される。
        引数がなければチェックアウト時に受け取った ID を使う。
        """
        self._guard((OrderStatus.AWAITING_VALIDATION,), OrderStatus.STOCK_CONFIRMED)
        reference = validate_payment_reference(payment_provider_order_id)
        self._raise("OrderStockVerified", events.OrderStockVerified(
            order_id=self.id,
            payment_provider_order_id=reference or self.checkout_payment_reference,
            timestamp=now or datetime.now(timezone.utc),
        ))

    def reject_stock(
        self,
        rejected_product_ids: list[str],
        now: datetime | None = None,
    ) -> None:
        self._guard((OrderStatus.AWAITING_VALIDATION,), OrderStatus.STOCK_REJECTED)
        names = [
            item.product_name for item in self.items
            if item.product_id in rejected_product_ids
        ]
        self._raise("OrderStockRefused", events.OrderStockRefused(
            order_id=self.id,
            rejected_product_ids=list(rejected_product_ids),
            description=f"The product items don't have stock: ({', '.join(names)}).",
            timestamp=now or datetime.now(timezone.utc),
        ))

    def mark_payment_succeeded(self, now: datetime | None = None) -> None:
        self._guard((OrderStatus.STOCK_CONFIRMED,), OrderStatus.PAID)
        self._raise("OrderPaid", events.OrderPaid(
            order_id=self.id, timestamp=now or datetime.now(timezone.utc),
        ))

    def mark_payment_failed(self, now: datetime | None = None) -> None:
        self._guard((OrderStatus.STOCK_CONFIRMED,), OrderStatus.PAYMENT_FAILED)
        self._raise("OrderPaymentRejected", events.OrderPaymentRejected(
            order_id=self.id, timestamp=now or datetime.now(timezone.utc),
        ))

    def ship(self, now: datetime | None = None) -> None:
        self._guard((OrderStatus.PAID,), OrderStatus.SHIPPED)
        self._raise("OrderShipped", events.OrderShipped(
            order_id=self.id, timestamp=now or datetime.now(timezone.utc),
        ))

    def cancel(self, reason: str = "", now: datetime | None = None) -> None:
        self._guard(CANCELLABLE, OrderStatus.CANCELLED)
        self._raise("OrderCancelled", events.OrderCancelled(
            order_id=self.id,
            reason=reason or "The order was cancelled.",
            timestamp=now or datetime.now(timezone.utc),
        ))

    def _guard(self, allowed: tuple[OrderStatus, ...], target: OrderStatus) -> None:
        if self.status not in allowed:
            raise InvalidStateTransition(self.id, self.status, target)

    def _raise(self, event_type: str, event) -> None:
        data = event.model_dump(mode="json")
        self.apply_event(event_type, data)
        self.changes.append((event_type, data))

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_submitted(self, data: dict) -> None:
        self.id = UUID(data["order_id"])
        self.buyer_id = data["buyer_id"]
        self.buyer_name = data["buyer_name"]
        self.address = Address(
            data["street"], data["city"], data["state"], data["country"], data["zip_code"],
        )
        self.payment_method = data["payment_method"]
        self.checkout_payment_reference = data.get("checkout_payment_reference")
        self.items = [OrderItem(**item) for item in data["items"]]
        self.created_at = datetime.fromisoformat(data["timestamp"])
        self.status = OrderStatus.SUBMITTED

    def apply_validation_requested(self, _data: dict) -> None:
        self.status = OrderStatus.AWAITING_VALIDATION

    def apply_stock_verified(self, data: dict) -> None:
        self.payment_provider_order_id = data.get("payment_provider_order_id")
        self.status = OrderStatus.STOCK_CONFIRMED

    def apply_stock_refused(self, data: dict) -> None:
        self.description = data["description"]
        self.status = OrderStatus.STOCK_REJECTED

    def apply_paid(self, _data: dict) -> None:
        self.status = OrderStatus.PAID

    def apply_payment_rejected(self, _data: dict) -> None:
        self.status = OrderStatus.PAYMENT_FAILED

    def apply_shipped(self, _data: dict) -> None:
        self.status = OrderStatus.SHIPPED

    def apply_cancelled(self, data: dict) -> None:
        self.description = data["reason"]
        self.status = OrderStatus.CANCELLED

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderSubmitted": self.apply_order_submitted,
            "OrderValidationRequested": self.apply_validation_requested,
            "OrderStockVerified": self.apply_stock_verified,
            "OrderStockRefused": self.apply_stock_refused,
            "OrderPaid": self.apply_paid,
            "OrderPaymentRejected": self.apply_payment_rejected,
            "OrderShipped": self.apply_shipped,
            "OrderCancelled": self.apply_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
