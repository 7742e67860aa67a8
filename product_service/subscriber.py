"""
Product Service — Kafka サブスクライバー

product-events トピックをコンシューマグループとして購読し、
受信したイベントをハンドラに渡す。パブリッシャーとは独立に動く
（別プロセスでもよい。共有するのはブローカーだけ）。

  Stopped ─▶ Connecting ─▶ Subscribed ─▶ Running ─▶ Stopped
                  │                          │
                  └──────────▶ Failed ◀──────┘  (接続断。自動再接続はしない)

- 初回参加時はトピックの先頭から読む（履歴をすべてリプレイ）
- 同じ group_id のインスタンス同士はパーティションを分け合う
- 壊れたメッセージはログに残してスキップ（後続の配信を止めない）
- ハンドラの結果は見ない。例外はログに残すだけでリトライしない
- ハンドラにタイムアウトはない（遅いハンドラはそのパーティションを詰まらせる）
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from aiokafka.errors import KafkaError

from .broker import ConsumerFactory
from .errors import MalformedMessage, SubscriberFailed
from .events import EventEnvelope

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope, Any], Awaitable[None]]


class SubscriberState(str, Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RUNNING = "running"
    FAILED = "failed"


class EventSubscriber:
    def __init__(
        self,
        consumer_factory: ConsumerFactory,
        handler: EventHandler,
        topic: str = "product-events",
        group_id: str = "nest-kafka-crud-consumer",
    ) -> None:
        self._consumer_factory = consumer_factory
        self._handler = handler
        self.topic = topic
        self.group_id = group_id
        self.state = SubscriberState.STOPPED
        self._consumer: Any = None
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self.messages_processed = 0
        self.messages_skipped = 0
        self.handler_errors = 0

    # ── Lifecycle ────────────────────────────────

    async def start(self) -> None:
        if self.state != SubscriberState.STOPPED:
            raise RuntimeError(f"cannot start subscriber in state {self.state.value}")

        self.state = SubscriberState.CONNECTING
        self._stopping = asyncio.Event()
        consumer = self._consumer_factory()
        try:
            await consumer.start()
        except KafkaError as e:
            self.state = SubscriberState.FAILED
            logger.exception(
                "Kafka consumer failed to join group %s on %s",
                self.group_id,
                self.topic,
            )
            raise SubscriberFailed(f"consumer could not connect: {e}") from e

        self._consumer = consumer
        self.state = SubscriberState.SUBSCRIBED
        logger.info(
            "Kafka consumer subscribed to topic: %s (group=%s)",
            self.topic,
            self.group_id,
        )

        self._task = asyncio.create_task(
            self._consume_loop(), name=f"consumer-{self.topic}-{self.group_id}"
        )
        self.state = SubscriberState.RUNNING

    async def stop(self) -> None:
        """
        新しいメッセージの配信を止め、処理中のハンドラの完了を待ってから
        接続を解放する。
        """
        self._stopping.set()
        try:
            if self._task is not None:
                await asyncio.gather(self._task, return_exceptions=True)
        finally:
            self._task = None
            await self._release()
            if self.state != SubscriberState.FAILED:
                self.state = SubscriberState.STOPPED

    async def join(self) -> None:
        """消費ループの終了を待つ。FAILED で終わった場合は SubscriberFailed。"""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        if self.state == SubscriberState.FAILED:
            raise SubscriberFailed(f"subscriber for {self.topic} failed")

    async def _release(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            await consumer.stop()
            logger.info("Kafka consumer disconnected (group=%s)", self.group_id)

    # ── Consume loop ─────────────────────────────

    async def _consume_loop(self) -> None:
        stop_wait = asyncio.create_task(self._stopping.wait())
        try:
            while not self._stopping.is_set():
                fetch = asyncio.create_task(self._consumer.getone())
                done, _ = await asyncio.wait(
                    {fetch, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if fetch not in done:
                    fetch.cancel()
                    await asyncio.gather(fetch, return_exceptions=True)
                    break
                # ここで例外が出るのは接続断
                record = fetch.result()
                await self._dispatch(record)
        except KafkaError:
            self.state = SubscriberState.FAILED
            logger.exception(
                "Kafka consumer lost connection (group=%s); restart required",
                self.group_id,
            )
            await self._release()
        finally:
            stop_wait.cancel()

    async def _dispatch(self, record: Any) -> None:
        try:
            envelope = EventEnvelope.from_bytes(record.value)
        except MalformedMessage as e:
            self.messages_skipped += 1
            logger.warning(
                "Skipping malformed message %s/%d@%d: %s",
                record.topic,
                record.partition,
                record.offset,
                e,
            )
            return

        try:
            await self._handler(envelope, record)
        except Exception:
            self.handler_errors += 1
            logger.exception(
                "Failed to process Kafka message %s/%d@%d (%s)",
                record.topic,
                record.partition,
                record.offset,
                envelope.type.value,
            )
            return
        self.messages_processed += 1
