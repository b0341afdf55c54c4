"""
Basket Service — バスケットリポジトリ

バスケットは購入者ごとに Redis の1キーに JSON で保存する。
注文が受け付けられたら (OrderStarted) キーごと削除する。
"""

import logging
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

KEY_PREFIX = "basket:"


class BasketItem(BaseModel):
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int = Field(ge=1)
    picture_url: str = ""


class CustomerBasket(BaseModel):
    buyer_id: str
    items: list[BasketItem] = Field(default_factory=list)


class RedisBasketRepository:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    @staticmethod
    def _key(buyer_id: str) -> str:
        return f"{KEY_PREFIX}{buyer_id}"

    async def get_basket(self, buyer_id: str) -> CustomerBasket | None:
        data = await self.redis.get(self._key(buyer_id))
        if data is None:
            return None
        return CustomerBasket.model_validate_json(data)

    async def update_basket(self, basket: CustomerBasket) -> CustomerBasket:
        await self.redis.set(self._key(basket.buyer_id), basket.model_dump_json())
        logger.info("Basket item persisted successfully for %s", basket.buyer_id)
        return basket

    async def delete_basket(self, buyer_id: str) -> bool:
        deleted = await self.redis.delete(self._key(buyer_id))
        return bool(deleted)
