"""
Payment Service — Order Service クエリクライアント

決済確定の前に注文の状態と決済プロバイダの注文 ID を確認する。
取得に失敗しても例外は投げず None を返す（呼び出し側はイベントの内容で続行する）。
"""

import logging
from uuid import UUID

import httpx
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class OrderDto(BaseModel):
    order_number: str
    total: float
    status: str
    payment_provider_order_id: str | None = None


class OrderingApiClient:
    def __init__(self, base_url: str, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client

    async def get_order(self, order_id: UUID) -> OrderDto | None:
        try:
            resp = await self.http_client.get(f"{self.base_url}/queries/orders/{order_id}")
            resp.raise_for_status()
            return OrderDto.model_validate(resp.json())
        except (httpx.HTTPError, ValidationError, ValueError):
            logger.exception("Error retrieving order %s from Order Service", order_id)
            return None
