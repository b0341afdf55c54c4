"""
Order Service — 冪等コマンドゲート (Idempotent Command Gate)

クライアントのリトライやネットワークの二重送信で同じコマンドが届いても、
注文が2つできたり決済が2回走ったりしてはならない。
そこで状態を変えるコマンドを request_id (クライアントが決める UUID) で包む。

  1. request_id の記録があれば、保存済みの結果をそのまま返す（コマンドは実行しない）
  2. なければ 1つのトランザクションで
        記録の仮登録 (INSERT) → コマンド実行 → 結果を保存 → COMMIT
  3. コマンドが例外を投げたらロールバック。記録は残らないので同じ ID で再試行できる
  4. 仮登録が主キー制約に引っかかったら、同じ ID の別リクエストが先にコミットした。
     自分の作業は捨てて、先行リクエストの結果を返す
  5. 記録のコマンド種別が違えば RequestIdReused（別コマンドの結果は返さない）

主キー制約はデータベースが保証するので、同時に届いた重複リクエストでも
コマンドが2回コミットされることはない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import RequestIdReused
from .schema import TIMESTAMP

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseModel)


@dataclass(frozen=True)
class IdempotencyRecord:
    request_id: UUID
    command_type: str
    result: str | None
    created_at: datetime | None


class IdempotencyStore:
    """idempotency_requests テーブルへのアクセス"""

    def __init__(
        self,
        session_factory: sessionmaker,
        wait_timeout: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.session_factory = session_factory
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval

    async def find(self, session: AsyncSession, request_id: UUID) -> IdempotencyRecord | None:
        result = await session.execute(
            text("""
                SELECT request_id, command_type, result, created_at
                FROM idempotency_requests
                WHERE request_id = :request_id
            """).columns(created_at=TIMESTAMP),
            {"request_id": str(request_id)},
        )
        row = result.fetchone()
        if not row:
            return None
        return IdempotencyRecord(
            request_id=UUID(row.request_id),
            command_type=row.command_type,
            result=row.result,
            created_at=row.created_at,
        )

    async def claim(self, session: AsyncSession, request_id: UUID, command_type: str) -> None:
        """記録を仮登録する。既にあれば IntegrityError。"""
        await session.execute(
            text("""
                INSERT INTO idempotency_requests (request_id, command_type, result, created_at)
                VALUES (:request_id, :command_type, NULL, :now)
            """).bindparams(bindparam("now", type_=TIMESTAMP)),
            {
                "request_id": str(request_id),
                "command_type": command_type,
                "now": datetime.now(timezone.utc),
            },
        )

    async def complete(self, session: AsyncSession, request_id: UUID, result: str) -> None:
        await session.execute(
            text("UPDATE idempotency_requests SET result = :result WHERE request_id = :request_id"),
            {"request_id": str(request_id), "result": result},
        )

    async def wait_for_result(self, request_id: UUID) -> IdempotencyRecord:
        """先行リクエストの結果が見えるまで待つ。"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout
        while True:
            async with self.session_factory() as session:
                record = await self.find(session, request_id)
            if record is not None and record.result is not None:
                return record
            if loop.time() >= deadline:
                raise TimeoutError(f"No result recorded for request {request_id}")
            await asyncio.sleep(self.poll_interval)


def _check_command_type(record: IdempotencyRecord, command_type: str) -> None:
    if record.command_type != command_type:
        logger.warning(
            "Request %s was first used for %s, now for %s",
            record.request_id, record.command_type, command_type,
        )
        raise RequestIdReused(record.request_id, record.command_type, command_type)


def with_idempotency(
    store: IdempotencyStore,
    execute: Callable[[AsyncSession, Any], Awaitable[R]],
    *,
    command_type: str,
    result_type: type[R],
) -> Callable[[UUID, Any], Awaitable[R]]:
    """
    コマンド実行関数 execute(session, command) を冪等にする。

    execute はセッションに変更を積むだけでコミットしない。
    コミットはゲートが記録の保存と一緒に行う。
    """

    async def gated(request_id: UUID, command: Any) -> R:
        async with store.session_factory() as session:
            record = await store.find(session, request_id)
            if record is not None:
                _check_command_type(record, command_type)
                if record.result is not None:
                    logger.info("Duplicate %s request %s; returning stored result", command_type, request_id)
                    return result_type.model_validate_json(record.result)

            try:
                await store.claim(session, request_id, command_type)
            except IntegrityError:
                await session.rollback()
                logger.info("Concurrent duplicate %s request %s; waiting for first result", command_type, request_id)
                record = await store.wait_for_result(request_id)
                _check_command_type(record, command_type)
                return result_type.model_validate_json(record.result)

            result = await execute(session, command)
            await store.complete(session, request_id, result.model_dump_json())
            await session.commit()

        logger.info("Executed %s request %s", command_type, request_id)
        return result

    gated.command_type = command_type
    return gated
