"""
Order Service — イベントストア

注文集約のドメインイベントを (aggregate_id, version) の順に追記していく。
追記時の version は「読み込んだ時点のバージョン + 1」。
別のトランザクションが先に同じ version を書いていれば UNIQUE 制約で弾かれ、
ConcurrencyConflict になる（楽観的ロック）。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate
from .errors import ConcurrencyConflict
from .schema import TIMESTAMP

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"

_INSERT_EVENT = text("""
    INSERT INTO event_store
        (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
    VALUES
        (:aggregate_id, :aggregate_type, :event_type, :event_data, :version, :created_at)
""").bindparams(bindparam("created_at", type_=TIMESTAMP))

_SELECT_EVENTS = text("""
    SELECT event_type, event_data, version, created_at
    FROM event_store
    WHERE aggregate_id = :aggregate_id
    ORDER BY version ASC
""").columns(created_at=TIMESTAMP)


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID,
    event_type: str,
    event_data: dict,
    expected_version: int,
    aggregate_type: str = AGGREGATE_TYPE,
) -> int:
    """イベントを1件追記し、新しいバージョンを返す。"""
    version = expected_version + 1
    try:
        await session.execute(_INSERT_EVENT, {
            "aggregate_id": str(aggregate_id),
            "aggregate_type": aggregate_type,
            "event_type": event_type,
            "event_data": json.dumps(event_data, default=str),
            "version": version,
            "created_at": datetime.now(timezone.utc),
        })
    except IntegrityError as e:
        raise ConcurrencyConflict(aggregate_id, expected_version) from e
    return version


async def append_changes(session: AsyncSession, agg: OrderAggregate) -> None:
    """集約に溜まった未保存のイベントを順に追記し、agg.version を進める。"""
    for event_type, data in agg.changes:
        agg.version = await append_event(session, agg.id, event_type, data, agg.version)
        logger.debug("Appended %s to order %s at version %d", event_type, agg.id, agg.version)
    agg.changes.clear()


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    """集約のイベントをバージョン順に返す。from_events にそのまま渡せる形。"""
    result = await session.execute(_SELECT_EVENTS, {"aggregate_id": str(aggregate_id)})
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data),
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
