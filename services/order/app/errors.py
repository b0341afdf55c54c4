"""Order Service — ドメイン例外"""

from uuid import UUID


class OrderingError(Exception):
    """注文ドメインの例外の基底"""


class OrderValidationError(OrderingError):
    """住所・明細などの入力が不正（永続化前に拒否される）"""


class InvalidStateTransition(OrderingError):
    """集約のガード違反。順序の入れ替わった・重複したイベントで発生する。"""

    def __init__(self, order_id: UUID | None, current, target) -> None:
        self.order_id = order_id
        self.current = current
        self.target = target
        current_name = getattr(current, "value", current)
        target_name = getattr(target, "value", target)
        super().__init__(
            f"Order {order_id}: cannot change status from {current_name} to {target_name}"
        )


class OrderNotFound(OrderingError):
    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class ConcurrencyConflict(OrderingError):
    """同じ集約バージョンへの同時書き込み（楽観的ロック失敗）"""

    def __init__(self, order_id: UUID, expected_version: int) -> None:
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(
            f"Order {order_id} was modified concurrently (expected version {expected_version})"
        )


class RequestIdReused(OrderingError):
    """同じ request_id が別の種類のコマンドに使われた"""

    def __init__(self, request_id: UUID, recorded_type: str, command_type: str) -> None:
        self.request_id = request_id
        self.recorded_type = recorded_type
        self.command_type = command_type
        super().__init__(
            f"Request {request_id} was already used for {recorded_type}, not {command_type}"
        )
