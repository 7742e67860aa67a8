"""
Product Service — インメモリ・ブローカー

Kafka を立てずにローカル実行・テストするためのパーティション付きログ。
AIOKafkaProducer / AIOKafkaConsumer と同じ形のメソッドだけを持つので、
EventPublisher / EventSubscriber はどちらのトランスポートでも同じコードで動く。

  - トピックは N 個のパーティションを持つ
  - キーのハッシュでパーティションを決める（同じキー → 同じパーティション → 順序保証）
  - コンシューマグループ: メンバーの参加・離脱のたびにパーティションを再割り当て
  - コミット済みオフセットはグループ単位。未コミットのグループは先頭から読む
    (auto_offset_reset="earliest" 相当)

同一イベントループ内でのみ使うこと。
"""

import asyncio
import itertools
import logging
import time
import zlib
from collections import defaultdict
from dataclasses import dataclass, field

from aiokafka.errors import KafkaConnectionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryRecord:
    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes
    timestamp: int


@dataclass(frozen=True)
class RecordMetadata:
    topic: str
    partition: int
    offset: int


@dataclass
class _GroupState:
    members: list["MemoryConsumer"] = field(default_factory=list)
    # (topic, partition) → 次に読むオフセット
    offsets: dict[tuple[str, int], int] = field(default_factory=dict)
    generation: int = 0


class MemoryBroker:
    def __init__(self, num_partitions: int = 3) -> None:
        if num_partitions < 1:
            raise ValueError("num_partitions must be >= 1")
        self.num_partitions = num_partitions
        self._logs: dict[str, list[list[MemoryRecord]]] = {}
        self._groups: dict[str, _GroupState] = defaultdict(_GroupState)
        self._changed = asyncio.Condition()
        self._round_robin = itertools.count()
        self._available = True
        self._member_ids = itertools.count(1)

    # ── Producer / Consumer factories ─────────────

    def producer(self, client_id: str = "memory-producer") -> "MemoryProducer":
        return MemoryProducer(self, client_id)

    def consumer(
        self,
        topic: str,
        group_id: str,
        client_id: str = "memory-consumer",
    ) -> "MemoryConsumer":
        return MemoryConsumer(self, topic, group_id, client_id)

    # ── Log ───────────────────────────────────────

    def _partitions(self, topic: str) -> list[list[MemoryRecord]]:
        if topic not in self._logs:
            self._logs[topic] = [[] for _ in range(self.num_partitions)]
        return self._logs[topic]

    def partition_for(self, key: bytes | None) -> int:
        if key is None:
            return next(self._round_robin) % self.num_partitions
        return zlib.crc32(key) % self.num_partitions

    async def append(
        self, topic: str, value: bytes, key: bytes | None = None
    ) -> RecordMetadata:
        self._check_available()
        partition = self.partition_for(key)
        log = self._partitions(topic)[partition]
        record = MemoryRecord(
            topic=topic,
            partition=partition,
            offset=len(log),
            key=key,
            value=value,
            timestamp=int(time.time() * 1000),
        )
        log.append(record)
        async with self._changed:
            self._changed.notify_all()
        return RecordMetadata(topic, partition, record.offset)

    def records(self, topic: str) -> list[MemoryRecord]:
        """全パーティションのレコード（テスト・デバッグ用）"""
        return [r for log in self._partitions(topic) for r in log]

    # ── Availability (障害シミュレーション) ────────

    async def set_available(self, available: bool) -> None:
        self._available = available
        async with self._changed:
            self._changed.notify_all()

    def _check_available(self) -> None:
        if not self._available:
            raise KafkaConnectionError("memory broker is unavailable")

    # ── Consumer groups ───────────────────────────

    async def _join(self, member: "MemoryConsumer") -> None:
        self._check_available()
        member.member_id = f"{member.client_id}-{next(self._member_ids)}"
        group = self._groups[member.group_id]
        group.members.append(member)
        self._partitions(member.topic)
        await self._rebalance(member.group_id)

    async def _leave(self, member: "MemoryConsumer") -> None:
        group = self._groups[member.group_id]
        if member in group.members:
            group.members.remove(member)
            member.assigned = frozenset()
            await self._rebalance(member.group_id)

    async def _rebalance(self, group_id: str) -> None:
        group = self._groups[group_id]
        group.generation += 1
        members = sorted(group.members, key=lambda m: m.member_id)
        for idx, m in enumerate(members):
            m.assigned = frozenset(
                p for p in range(self.num_partitions) if p % len(members) == idx
            )
        logger.info(
            "Rebalanced group %s (generation %d): %s",
            group_id,
            group.generation,
            {m.member_id: sorted(m.assigned) for m in members},
        )
        async with self._changed:
            self._changed.notify_all()

    def _next_record(self, member: "MemoryConsumer") -> MemoryRecord | None:
        group = self._groups[member.group_id]
        log = self._partitions(member.topic)
        # パーティション間は公平に、パーティション内は厳密にオフセット順
        order = sorted(member.assigned)
        if not order:
            return None
        start = member.cursor % len(order)
        for p in order[start:] + order[:start]:
            offset = group.offsets.get((member.topic, p), 0)
            if offset < len(log[p]):
                group.offsets[(member.topic, p)] = offset + 1
                member.cursor = order.index(p) + 1
                return log[p][offset]
        return None

    async def _fetch(self, member: "MemoryConsumer") -> MemoryRecord:
        async with self._changed:
            while True:
                if not member.running:
                    raise KafkaConnectionError("consumer is not running")
                self._check_available()
                record = self._next_record(member)
                if record is not None:
                    return record
                await self._changed.wait()


class MemoryProducer:
    def __init__(self, broker: MemoryBroker, client_id: str) -> None:
        self._broker = broker
        self.client_id = client_id
        self._started = False

    async def start(self) -> None:
        self._broker._check_available()
        self._started = True

    async def stop(self) -> None:
        self._started = False

    async def send(
        self, topic: str, value: bytes | None = None, key: bytes | None = None
    ) -> "asyncio.Future[RecordMetadata]":
        if not self._started:
            raise KafkaConnectionError("producer is not started")
        meta = await self._broker.append(topic, value, key)
        fut = asyncio.get_running_loop().create_future()
        fut.set_result(meta)
        return fut

    async def send_and_wait(
        self, topic: str, value: bytes | None = None, key: bytes | None = None
    ) -> RecordMetadata:
        fut = await self.send(topic, value=value, key=key)
        return await fut


class MemoryConsumer:
    def __init__(
        self, broker: MemoryBroker, topic: str, group_id: str, client_id: str
    ) -> None:
        self._broker = broker
        self.topic = topic
        self.group_id = group_id
        self.client_id = client_id
        self.member_id = client_id
        self.assigned: frozenset[int] = frozenset()
        self.cursor = 0
        self.running = False

    async def start(self) -> None:
        await self._broker._join(self)
        self.running = True

    async def stop(self) -> None:
        self.running = False
        await self._broker._leave(self)

    def assignment(self) -> frozenset[int]:
        return self.assigned

    async def getone(self) -> MemoryRecord:
        return await self._broker._fetch(self)
