"""
Shared — 統合イベントバス (Redis Streams)

Redis Pub/Sub は fire-and-forget なので、購読者が落ちている間のイベントは失われる。
ここでは Redis Streams + コンシューマグループを使い、少なくとも1回の配信を保証する。

  publish:  XADD <stream> {event_type, data}
  consume:  XREADGROUP → ハンドラ実行 → XACK
            ハンドラが失敗したメッセージは ACK せず、保留(pending)として再配信する。

各サービスはイベント種別ごとにハンドラを1つ登録する (ディスパッチテーブル)。
同じストリームを複数サービスが別々のグループ名で購読する。
"""

import asyncio
import logging
import socket
from collections import defaultdict
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from .integration_events import IntegrationEvent, deserialize, serialize

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "integration_events"

Handler = Callable[[IntegrationEvent], Awaitable[None]]


class RedisStreamEventBus:
    """Redis Streams 上の at-least-once 配信バス"""

    def __init__(
        self,
        redis: aioredis.Redis,
        group: str,
        consumer: str | None = None,
        stream: str = DEFAULT_STREAM,
        block_ms: int = 1000,
        batch_size: int = 10,
        max_deliveries: int = 5,
        retry_delay: float = 1.0,
    ):
        self.redis = redis
        self.group = group
        self.consumer = consumer or socket.gethostname()
        self.stream = stream
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.max_deliveries = max_deliveries
        self.retry_delay = retry_delay
        self._handlers: dict[str, Handler] = {}
        self._attempts: defaultdict[str, int] = defaultdict(int)

    # ── 発行 ─────────────────────────────────────

    async def publish(self, event: IntegrationEvent) -> None:
        await self.redis.xadd(self.stream, serialize(event))
        logger.info("Published integration event %s (%s)", event.id, event.event_type)

    # ── 購読 ─────────────────────────────────────

    def subscribe(self, event_cls: type[IntegrationEvent], handler: Handler) -> None:
        self._handlers[event_cls.__name__] = handler
        logger.info("Subscribed %s to %s", self.group, event_cls.__name__)

    async def ensure_group(self) -> None:
        """コンシューマグループを作成する（既にあれば何もしない）。"""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def handle_message(self, message_id: str, fields: dict | None) -> bool:
        """
        1メッセージを処理する。ACK してよい場合に True を返す。

        ハンドラ未登録・壊れたメッセージは ACK して捨てる。
        ハンドラが例外を投げた場合は ACK せず再配信に回すが、
        max_deliveries 回失敗したら諦めてエラーログを残し ACK する。
        """
        if not fields:
            return True

        event_type = fields.get("event_type", "")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("No handler for %s in group %s", event_type, self.group)
            return True

        try:
            event = deserialize(event_type, fields["data"])
        except (KeyError, ValueError):
            logger.exception("Dropping malformed message %s (%s)", message_id, event_type)
            return True

        try:
            await handler(event)
        except Exception:
            self._attempts[message_id] += 1
            attempts = self._attempts[message_id]
            if attempts >= self.max_deliveries:
                logger.error(
                    "Giving up on message %s (%s) after %d attempts",
                    message_id, event_type, attempts,
                )
                del self._attempts[message_id]
                return True
            logger.exception(
                "Handler failed for message %s (%s), attempt %d",
                message_id, event_type, attempts,
            )
            return False

        self._attempts.pop(message_id, None)
        return True

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまでストリームを読み続ける。

        起動直後と処理失敗の後は、まず自分の保留メッセージ (ID "0") を読み直す。
        保留が空になったら新着メッセージ (ID ">") の待ち受けに戻る。
        """
        await self.ensure_group()
        logger.info("Consuming %s as %s/%s", self.stream, self.group, self.consumer)

        reading_pending = True
        while not shutdown_event.is_set():
            if reading_pending:
                response = await self.redis.xreadgroup(
                    self.group, self.consumer, {self.stream: "0"},
                    count=self.batch_size,
                )
            else:
                response = await self.redis.xreadgroup(
                    self.group, self.consumer, {self.stream: ">"},
                    count=self.batch_size, block=self.block_ms,
                )

            received = 0
            failed = False
            for _stream, messages in response or []:
                for message_id, fields in messages:
                    received += 1
                    if await self.handle_message(message_id, fields):
                        await self.redis.xack(self.stream, self.group, message_id)
                    else:
                        failed = True

            if failed:
                reading_pending = True
                await asyncio.sleep(self.retry_delay)
            elif reading_pending and received == 0:
                reading_pending = False
