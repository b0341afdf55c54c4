"""
Order Service — 猶予期間ワーカー

注文直後は購入者がキャンセルできるよう、しばらく Submitted のまま置いておく。
猶予期間を過ぎた注文を AwaitingValidation に進め、
OrderStatusChangedToAwaitingValidation で在庫確認を依頼する。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from services.shared.eventbus import RedisStreamEventBus

from . import commands
from .aggregate import OrderStatus
from .event_handlers import apply_transition
from .schema import TIMESTAMP

logger = logging.getLogger(__name__)


async def find_orders_past_grace_period(session: AsyncSession, cutoff: datetime) -> list[UUID]:
    result = await session.execute(
        text("""
            SELECT id FROM orders_read_model
            WHERE status = :status AND created_at <= :cutoff
            ORDER BY created_at ASC
        """).bindparams(bindparam("cutoff", type_=TIMESTAMP)),
        {"status": OrderStatus.SUBMITTED.value, "cutoff": cutoff},
    )
    return [UUID(row.id) for row in result.fetchall()]


async def process_expired_orders(
    session_factory: sessionmaker,
    event_bus: RedisStreamEventBus,
    grace_period_seconds: float,
) -> int:
    """猶予期間を過ぎた注文を在庫確認待ちにする。進めた件数を返す。"""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace_period_seconds)
    async with session_factory() as session:
        order_ids = await find_orders_past_grace_period(session, cutoff)

    moved = 0
    for order_id in order_ids:
        agg = await apply_transition(
            session_factory, event_bus, order_id,
            lambda session, order_id=order_id: commands.set_awaiting_validation(session, order_id),
        )
        if agg is not None:
            moved += 1
    return moved


async def run_grace_period_worker(
    session_factory: sessionmaker,
    event_bus: RedisStreamEventBus,
    shutdown_event: asyncio.Event,
    grace_period_seconds: float,
    check_interval: float = 10.0,
) -> None:
    logger.info("Grace period worker started (%.0fs)", grace_period_seconds)
    while not shutdown_event.is_set():
        try:
            moved = await process_expired_orders(session_factory, event_bus, grace_period_seconds)
            if moved:
                logger.info("Moved %d orders to awaiting validation", moved)
        except Exception:
            logger.exception("Grace period check failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)
        except asyncio.TimeoutError:
            pass
