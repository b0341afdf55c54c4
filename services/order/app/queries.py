"""
Order Service — クエリハンドラ (CQRS の Read 側)

CQRS パターンでは、読み取りはリードモデル(Read Model)から行う。
リードモデルはコマンドが更新する非正規化データで、クエリに最適化されている。

Payment Service は決済確定の前にここから payment_provider_order_id と status を取得する。
"""

import json
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import TIMESTAMP


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    """リードモデルから注文を取得する。"""
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE id = :id").columns(
            created_at=TIMESTAMP, updated_at=TIMESTAMP,
        ),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "order_number": str(row.id),
        "date": row.created_at.isoformat() if row.created_at else None,
        "status": row.status,
        "description": row.description,
        "street": row.street,
        "city": row.city,
        "state": row.state,
        "zip_code": row.zip_code,
        "country": row.country,
        "items": json.loads(row.items),
        "total": float(row.total),
        "payment_provider_order_id": row.payment_provider_order_id,
    }


async def list_orders(session: AsyncSession, buyer_id: str | None = None) -> list[dict]:
    """注文サマリー一覧をリードモデルから取得する。buyer_id で絞り込める。"""
    if buyer_id is None:
        statement = text("SELECT * FROM orders_read_model ORDER BY created_at DESC")
        params = {}
    else:
        statement = text("""
            SELECT * FROM orders_read_model
            WHERE buyer_id = :buyer_id
            ORDER BY created_at DESC
        """)
        params = {"buyer_id": buyer_id}
    result = await session.execute(
        statement.columns(created_at=TIMESTAMP, updated_at=TIMESTAMP), params,
    )
    return [
        {
            "order_number": str(row.id),
            "date": row.created_at.isoformat() if row.created_at else None,
            "status": row.status,
            "total": float(row.total),
        }
        for row in result.fetchall()
    ]
