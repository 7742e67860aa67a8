"""
Product Service — イベントパブリッシャー

ドメインの変更を EventEnvelope に包んでブローカーに送る。

  publish() は送信をキューに積んだ時点で戻り、配信結果は
  asyncio.Task として返す。積んだ順番がそのままパーティション内の順番になる。

  ┌──────────────┐  publish()  ┌────────────────┐  send(key=type)  ┌───────┐
  │ ProductStore │ ──────────▶ │ EventPublisher │ ───────────────▶ │ Kafka │
  └──────────────┘             └────────────────┘                  └───────┘

接続はスコープ付きリソース: start() で一度だけ確立し、stop() で必ず解放する。
"""

import asyncio
import logging
from typing import Any

from aiokafka.errors import KafkaError

from .broker import ProducerFactory
from .errors import BrokerUnavailable, DeliveryFailed
from .events import EventEnvelope, ProductEventType

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        producer_factory: ProducerFactory,
        topic: str = "product-events",
        partition_by: str = "type",
    ) -> None:
        self._producer_factory = producer_factory
        self._topic = topic
        self._partition_by = partition_by
        self._producer: Any = None
        self._pending: set[asyncio.Task] = set()

    @property
    def started(self) -> bool:
        return self._producer is not None

    async def start(self) -> None:
        if self._producer is not None:
            return
        producer = self._producer_factory()
        try:
            await producer.start()
        except KafkaError as e:
            logger.exception("Kafka producer failed to connect (topic=%s)", self._topic)
            raise BrokerUnavailable(f"producer could not connect: {e}") from e
        self._producer = producer
        logger.info("Kafka producer connected (topic=%s)", self._topic)

    async def stop(self) -> None:
        producer, self._producer = self._producer, None
        if producer is None:
            return
        try:
            if self._pending:
                await asyncio.gather(*self._pending, return_exceptions=True)
        finally:
            await producer.stop()
            logger.info("Kafka producer disconnected")

    async def __aenter__(self) -> "EventPublisher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _key_for(self, envelope: EventEnvelope) -> bytes:
        if self._partition_by == "id":
            return str(envelope.payload["id"]).encode("utf-8")
        return envelope.type.value.encode("utf-8")

    async def publish(
        self, event_type: ProductEventType, payload: dict
    ) -> "asyncio.Task[EventEnvelope]":
        """
        イベントを送信キューに積む。

        積めなかった場合は DeliveryFailed を送出する。
        戻り値のタスクはブローカーの ack で完了し、失敗時は DeliveryFailed になる。
        """
        if self._producer is None:
            raise DeliveryFailed("publisher is not started")

        envelope = EventEnvelope(type=event_type, payload=payload)
        try:
            ack = await self._producer.send(
                self._topic,
                value=envelope.to_bytes(),
                key=self._key_for(envelope),
            )
        except KafkaError as e:
            raise DeliveryFailed(f"failed to send {event_type.value}: {e}") from e

        task = asyncio.create_task(self._confirm(envelope, ack))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _confirm(self, envelope: EventEnvelope, ack: asyncio.Future) -> EventEnvelope:
        try:
            meta = await ack
        except KafkaError as e:
            raise DeliveryFailed(
                f"broker rejected {envelope.type.value}: {e}"
            ) from e
        logger.debug(
            "Delivered %s to %s/%d@%d",
            envelope.type.value,
            meta.topic,
            meta.partition,
            meta.offset,
        )
        return envelope
