"""
Product Service — イベントハンドラ / 投影 (Projection)

サブスクライバが受け取ったイベントの処理先。

- log_event: 受信イベントをログに出すだけ（元サービスのコンシューマと同じ）
- ProductIndexProjection: Redis ハッシュに商品の最新スナップショットを投影する
  セカンダリインデックス。ストア本体とは独立した Read 側。

  ┌──────────────┐  product-events  ┌────────────┐    HSET/HDEL    ┌───────┐
  │ ProductStore │ ───── Kafka ───▶ │ Subscriber │ ──────────────▶ │ Redis │
  └──────────────┘                  └────────────┘                 └───────┘
"""

import json
import logging
import time
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Any

import redis.asyncio as aioredis

from .events import EventEnvelope, ProductEventType
from .models import Product
from .subscriber import EventHandler

logger = logging.getLogger(__name__)

INDEX_KEY = "product-index"
STATS_KEY = "product-index:stats"
TOMBSTONES_KEY = "product-index:deleted"
TOMBSTONE_TTL = timedelta(hours=24)


async def log_event(envelope: EventEnvelope, record: Any) -> None:
    logger.info(
        "[Kafka] %s/%s | %s | %s",
        record.topic,
        record.partition,
        envelope.type.value,
        envelope.timestamp.isoformat(),
    )
    logger.info("  Payload: %s", json.dumps(envelope.payload, indent=2))


class ProductIndexProjection:
    """イベントタイプに応じて Redis 上の商品インデックスを更新する。"""

    def __init__(
        self,
        redis: aioredis.Redis,
        index_key: str = INDEX_KEY,
        stats_key: str = STATS_KEY,
        tombstones_key: str = TOMBSTONES_KEY,
        tombstone_ttl: timedelta = TOMBSTONE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis
        self.index_key = index_key
        self.stats_key = stats_key
        self.tombstones_key = tombstones_key
        self.tombstone_ttl = tombstone_ttl
        self._clock = clock

    async def __call__(self, envelope: EventEnvelope, record: Any = None) -> None:
        handler = {
            ProductEventType.CREATED: self._project_upsert,
            ProductEventType.UPDATED: self._project_upsert,
            ProductEventType.DELETED: self._project_deleted,
        }.get(envelope.type)
        if handler and await handler(envelope.payload):
            await self.redis.hincrby(self.stats_key, envelope.type.value, 1)

    async def _project_upsert(self, payload: dict) -> bool:
        """
        created / updated の投影。反映したら True。

        パーティションキーがイベント種別なので、同じ商品の created / updated /
        deleted は別パーティションに乗り、届く順番は保証されない。
        - 削除済み (tombstone あり) の商品は復活させない
        - updatedAt が古いスナップショットでは上書きしない
        """
        product_id = payload["id"]
        if await self.redis.zscore(self.tombstones_key, product_id) is not None:
            logger.debug("Ignoring snapshot for deleted product %s", product_id)
            return False

        current = await self.redis.hget(self.index_key, product_id)
        if current is not None:
            stored = Product.model_validate_json(current)
            incoming = Product.model_validate(payload)
            if stored.updated_at > incoming.updated_at:
                logger.debug("Ignoring stale snapshot for %s", product_id)
                return False
        await self.redis.hset(self.index_key, product_id, json.dumps(payload))
        return True

    async def _project_deleted(self, payload: dict) -> bool:
        """
        tombstone は削除時刻をスコアにした sorted set に置き、
        tombstone_ttl より古いものは削除のたびに掃除する。
        """
        now = self._clock()
        await self.redis.zadd(self.tombstones_key, {payload["id"]: now})
        await self.redis.zremrangebyscore(
            self.tombstones_key, "-inf", now - self.tombstone_ttl.total_seconds()
        )
        await self.redis.hdel(self.index_key, payload["id"])
        return True


def chain(handlers: Sequence[EventHandler]) -> EventHandler:
    """複数のハンドラを順番に呼ぶ 1 つのハンドラにまとめる。"""

    async def handle(envelope: EventEnvelope, record: Any) -> None:
        for h in handlers:
            await h(envelope, record)

    return handle
