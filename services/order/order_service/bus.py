"""
Order Service — イベントバス (Redis Streams)

発行: XADD でストリームに追記する。
購読: コンシューマーグループで明示的に ACK するループ。

Pub/Sub と違い、コンシューマーが落ちている間のメッセージも失われない。
ハンドラが失敗したメッセージは ACK せずに保留 (PEL) に残し、
min_idle_ms 経過後に XAUTOCLAIM で取り直して再試行する。
配信回数が max_deliveries に達したら dead_letter ストリームへ送って ACK する。

  order_events / payment_events : ドメインイベント
  deferred_tasks                : 外部障害で後回しにした副作用
                                  (在庫確定・解放、請求書生成)
  dead_letter                   : 再試行を使い切ったメッセージ
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from .events import DomainEvent

logger = logging.getLogger(__name__)

DEFERRED_TASKS = "deferred_tasks"
DEAD_LETTER = "dead_letter"

Handler = Callable[[dict], Awaitable[None]]


class EventBus:
    def __init__(self, redis: aioredis.Redis, maxlen: int = 100_000):
        self.redis = redis
        self.maxlen = maxlen

    async def publish(self, event: DomainEvent) -> str:
        message_id = await self.redis.xadd(
            event.stream,
            {"event_type": event.event_type, "data": event.model_dump_json()},
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.info("Published %s for order %s", event.event_type, event.order_id)
        return message_id

    async def defer(self, task: str, payload: dict) -> str:
        """外部サービス障害時の副作用をコンシューマーループに委ねる。"""
        message_id = await self.redis.xadd(
            DEFERRED_TASKS,
            {"event_type": task, "data": json.dumps(payload, default=str)},
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.warning("Deferred %s: %s", task, payload.get("order_id"))
        return message_id


class Consumer:
    """
    名前付きストリームを購読するコンシューマーループ。

    handlers は event_type → ハンドラ。該当ハンドラがないメッセージは
    そのまま ACK する (このグループの関心外)。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        group: str,
        name: str,
        streams: list[str],
        handlers: dict[str, Handler],
        *,
        max_deliveries: int = 5,
        min_idle_ms: int = 30_000,
        block_ms: int = 1_000,
        batch: int = 10,
    ):
        self.redis = redis
        self.group = group
        self.name = name
        self.streams = list(streams)
        self.handlers = handlers
        self.max_deliveries = max_deliveries
        self.min_idle_ms = min_idle_ms
        self.block_ms = block_ms
        self.batch = batch

    async def ensure_groups(self) -> None:
        for stream in self.streams:
            try:
                await self.redis.xgroup_create(stream, self.group, id="0", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def run(self, shutdown_event: asyncio.Event) -> None:
        await self.ensure_groups()
        logger.info("Consumer %s/%s subscribed to %s", self.group, self.name, self.streams)
        while not shutdown_event.is_set():
            try:
                handled = await self.poll_once()
            except RedisConnectionError:
                logger.exception("Event bus connection lost")
                handled = 0
                await asyncio.sleep(1.0)
            if not handled:
                await asyncio.sleep(0.1)

    async def poll_once(self) -> int:
        handled = 0
        for stream in self.streams:
            claimed = await self.redis.xautoclaim(
                stream,
                self.group,
                self.name,
                min_idle_time=self.min_idle_ms,
                start_id="0-0",
                count=self.batch,
            )
            for message_id, fields in claimed[1]:
                if fields:
                    await self.handle(stream, message_id, fields)
                    handled += 1

        response = await self.redis.xreadgroup(
            self.group,
            self.name,
            {stream: ">" for stream in self.streams},
            count=self.batch,
            block=self.block_ms,
        )
        for stream, messages in response or []:
            for message_id, fields in messages:
                await self.handle(stream, message_id, fields)
                handled += 1
        return handled

    async def handle(self, stream: str, message_id: str, fields: dict) -> bool:
        """1 メッセージを処理する。ACK したら True。"""
        event_type = fields.get("event_type")
        handler = self.handlers.get(event_type)
        if handler is None:
            await self.redis.xack(stream, self.group, message_id)
            return True

        try:
            await handler(json.loads(fields.get("data") or "{}"))
        except Exception as e:
            deliveries = await self._delivery_count(stream, message_id)
            logger.exception(
                "Failed to handle %s %s (delivery %d/%d)",
                event_type, message_id, deliveries, self.max_deliveries,
            )
            if deliveries >= self.max_deliveries:
                await self._dead_letter(stream, message_id, fields, e)
                return True
            return False

        await self.redis.xack(stream, self.group, message_id)
        return True

    async def _delivery_count(self, stream: str, message_id: str) -> int:
        pending = await self.redis.xpending_range(
            stream, self.group, min=message_id, max=message_id, count=1
        )
        return pending[0]["times_delivered"] if pending else 1

    async def _dead_letter(self, stream: str, message_id: str, fields: dict, error: Exception) -> None:
        await self.redis.xadd(
            DEAD_LETTER,
            {
                "stream": stream,
                "message_id": message_id,
                "group": self.group,
                "event_type": fields.get("event_type", ""),
                "data": fields.get("data", ""),
                "error": repr(error),
            },
        )
        await self.redis.xack(stream, self.group, message_id)
        logger.error("Dead-lettered %s from %s", message_id, stream)
