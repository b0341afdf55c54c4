"""
Basket Service — 統合イベントハンドラ

OrderStarted: 注文が受け付けられたので購入者のバスケットを空にする。
削除は何度実行しても同じ結果になるので、重複配信をそのまま受け入れられる。
"""

import logging

from services.shared.eventbus import RedisStreamEventBus
from services.shared.integration_events import OrderStarted

from .repository import RedisBasketRepository

logger = logging.getLogger(__name__)


def make_order_started_handler(repository: RedisBasketRepository):
    async def handle(event: OrderStarted) -> None:
        logger.info("Handling integration event: %s - (%s)", event.id, event.event_type)
        deleted = await repository.delete_basket(event.buyer_id)
        if not deleted:
            logger.info("Basket for %s was already empty", event.buyer_id)

    return handle


def register_handlers(event_bus: RedisStreamEventBus, repository: RedisBasketRepository) -> None:
    event_bus.subscribe(OrderStarted, make_order_started_handler(repository))
