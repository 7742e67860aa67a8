"""
Product Service — 商品ストア (Write 側 + Read 側)

商品の唯一の正本。インメモリ (再起動で消える)。

書き込み系 (create / update / remove) の流れ:
  1. ロックを取る（書き込みは常に 1 つずつ）
  2. マッピングを書き換える（1 回の代入・削除なので読み手は中途半端な状態を見ない）
  3. イベント発行を開始する（ロック内で開始するので、イベント順 = 書き込み順）
  4. 配信結果は待たずに返す。結果はコールバックでログに残す

発行に失敗しても書き込みは巻き戻さない。状態は変わったがイベントは届いていない、
という不整合ウィンドウは下流のコンシューマが許容する前提。
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from .errors import DeliveryFailed, NotFound
from .events import EventEnvelope, ProductEventType
from .models import CreateProductRequest, Product
from .publisher import EventPublisher

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "description", "price"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductStore:
    def __init__(
        self,
        publisher: EventPublisher,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._products: dict[str, Product] = {}
        self._lock = asyncio.Lock()
        self._publisher = publisher
        self._clock = clock
        self._deliveries: set[asyncio.Task] = set()
        self.delivery_failures = 0

    # ── Commands ─────────────────────────────────

    async def create(self, fields: CreateProductRequest) -> Product:
        async with self._lock:
            now = self._clock()
            product = Product(
                id=str(uuid4()),
                name=fields.name,
                description=fields.description,
                price=fields.price,
                created_at=now,
                updated_at=now,
            )
            self._products[product.id] = product
            await self._emit(ProductEventType.CREATED, product)
        return product

    async def update(self, product_id: str, changes: dict) -> Product:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields cannot be updated: {sorted(unknown)}")

        async with self._lock:
            existing = self._get(product_id)
            now = self._clock()
            # 時計の分解能が粗くても updatedAt は必ず進める
            if now <= existing.updated_at:
                now = existing.updated_at + timedelta(microseconds=1)
            updated = existing.model_copy(update={**changes, "updated_at": now})
            self._products[product_id] = updated
            await self._emit(ProductEventType.UPDATED, updated)
        return updated

    async def remove(self, product_id: str) -> None:
        async with self._lock:
            product = self._get(product_id)
            del self._products[product_id]
            await self._emit(ProductEventType.DELETED, product)

    # ── Queries ──────────────────────────────────

    async def list(self) -> list[Product]:
        return list(self._products.values())

    async def get(self, product_id: str) -> Product:
        return self._get(product_id)

    def _get(self, product_id: str) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFound(product_id)
        return product

    # ── Event delivery ───────────────────────────

    async def _emit(self, event_type: ProductEventType, product: Product) -> None:
        try:
            delivery = await self._publisher.publish(event_type, product.snapshot())
        except DeliveryFailed:
            self.delivery_failures += 1
            logger.warning(
                "Could not publish %s for product %s",
                event_type.value,
                product.id,
                exc_info=True,
            )
            return
        self._deliveries.add(delivery)
        delivery.add_done_callback(self._on_delivered)

    def _on_delivered(self, task: "asyncio.Task[EventEnvelope]") -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            self.delivery_failures += 1
            logger.warning("Event delivery was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self.delivery_failures += 1
            logger.warning("Event delivery failed: %s", exc)
            return
        envelope = task.result()
        logger.info(
            "Published %s for product %s",
            envelope.type.value,
            envelope.payload.get("id"),
        )

    @property
    def in_flight(self) -> int:
        return len(self._deliveries)

    async def drain(self) -> None:
        """発行中のイベントがすべて ack (または失敗) するまで待つ。"""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
