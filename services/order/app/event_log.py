"""
Order Service — 統合イベントログ (Transactional Outbox)

コマンドが発生させた統合イベントは、ドメインの変更と同じトランザクションで
integration_event_log に保存する。コミット後にバスへ中継(relay)するので、
「DB は更新されたのにイベントが消えた」状態にはならない。

状態:
    NotPublished → InProgress → Published
                             ↘ PublishedFailed (次の中継で再送)

InProgress のまま止まった行 (発行中のプロセス停止など) は
CLAIM_TIMEOUT 秒を過ぎると再び中継対象になる。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from services.shared.eventbus import RedisStreamEventBus
from services.shared.integration_events import IntegrationEvent, deserialize

from .schema import TIMESTAMP

logger = logging.getLogger(__name__)

NOT_PUBLISHED = "NotPublished"
IN_PROGRESS = "InProgress"
PUBLISHED = "Published"
PUBLISHED_FAILED = "PublishedFailed"

CLAIM_TIMEOUT = 60.0


async def save_event(session: AsyncSession, event: IntegrationEvent) -> None:
    """イベントを未発行として保存する（コミットは呼び出し側）。"""
    await session.execute(
        text("""
            INSERT INTO integration_event_log
                (event_id, event_type, content, state, times_sent, created_at)
            VALUES
                (:event_id, :event_type, :content, :state, 0, :now)
        """).bindparams(bindparam("now", type_=TIMESTAMP)),
        {
            "event_id": str(event.id),
            "event_type": event.event_type,
            "content": event.model_dump_json(),
            "state": NOT_PUBLISHED,
            "now": datetime.now(timezone.utc),
        },
    )


# InProgress のまま claim_timeout を過ぎた行は、中継が途中で止まったものとみなして取り直す
_PENDING = """
    (state IN (:not_published, :failed)
     OR (state = :in_progress AND claimed_at < :stale_before))
"""


def _pending_params(claim_timeout: float) -> dict:
    return {
        "not_published": NOT_PUBLISHED,
        "failed": PUBLISHED_FAILED,
        "in_progress": IN_PROGRESS,
        "stale_before": datetime.now(timezone.utc) - timedelta(seconds=claim_timeout),
    }


async def retrieve_pending(
    session: AsyncSession,
    limit: int = 100,
    claim_timeout: float = CLAIM_TIMEOUT,
) -> list[IntegrationEvent]:
    result = await session.execute(
        text(f"""
            SELECT event_type, content
            FROM integration_event_log
            WHERE {_PENDING}
            ORDER BY created_at ASC
            LIMIT :limit
        """).bindparams(bindparam("stale_before", type_=TIMESTAMP)),
        {**_pending_params(claim_timeout), "limit": limit},
    )
    return [deserialize(row.event_type, row.content) for row in result.fetchall()]


async def _claim(session: AsyncSession, event: IntegrationEvent, claim_timeout: float) -> bool:
    """未発行のイベントを InProgress にする。他の中継が先に取っていれば False。"""
    result = await session.execute(
        text(f"""
            UPDATE integration_event_log
            SET state = :claimed, times_sent = times_sent + 1, claimed_at = :now
            WHERE event_id = :event_id AND {_PENDING}
        """).bindparams(
            bindparam("stale_before", type_=TIMESTAMP),
            bindparam("now", type_=TIMESTAMP),
        ),
        {
            **_pending_params(claim_timeout),
            "claimed": IN_PROGRESS,
            "now": datetime.now(timezone.utc),
            "event_id": str(event.id),
        },
    )
    await session.commit()
    return result.rowcount == 1


async def _mark(session: AsyncSession, event: IntegrationEvent, state: str) -> None:
    await session.execute(
        text("UPDATE integration_event_log SET state = :state WHERE event_id = :event_id"),
        {"state": state, "event_id": str(event.id)},
    )
    await session.commit()


async def publish_pending(
    session_factory: sessionmaker,
    event_bus: RedisStreamEventBus,
    claim_timeout: float = CLAIM_TIMEOUT,
) -> int:
    """未発行のイベントをバスに中継する。発行できた件数を返す。"""
    published = 0
    async with session_factory() as session:
        pending = await retrieve_pending(session, claim_timeout=claim_timeout)
        for event in pending:
            if not await _claim(session, event, claim_timeout):
                continue
            try:
                await event_bus.publish(event)
            except Exception:
                logger.exception("Error publishing integration event %s (%s)", event.id, event.event_type)
                await _mark(session, event, PUBLISHED_FAILED)
                continue
            await _mark(session, event, PUBLISHED)
            published += 1
    return published


async def run_relay(
    session_factory: sessionmaker,
    event_bus: RedisStreamEventBus,
    shutdown_event: asyncio.Event,
    interval: float = 5.0,
) -> None:
    """コマンド直後の中継に漏れたイベントを定期的に再送する。"""
    while not shutdown_event.is_set():
        try:
            count = await publish_pending(session_factory, event_bus)
            if count:
                logger.info("Relayed %d pending integration events", count)
        except Exception:
            logger.exception("Integration event relay failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
