"""
Product Service — ブローカー接続ファクトリ

EVENT_BROKER に応じてプロデューサ・コンシューマを生成する。

- kafka : aiokafka (本番。永続・パーティション・コンシューマグループ)
- memory: MemoryBroker (Kafka 不要。ローカル実行・テスト用)

生成するだけで接続はしない。接続は EventPublisher.start() /
EventSubscriber.start() が行う。
"""

from collections.abc import Callable
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from .config import Settings
from .memory_broker import MemoryBroker

ProducerFactory = Callable[[], Any]
ConsumerFactory = Callable[[], Any]


def kafka_producer_factory(settings: Settings) -> ProducerFactory:
    def factory() -> AIOKafkaProducer:
        return AIOKafkaProducer(
            bootstrap_servers=settings.kafka_brokers,
            client_id=settings.producer_client_id,
        )

    return factory


def kafka_consumer_factory(settings: Settings) -> ConsumerFactory:
    def factory() -> AIOKafkaConsumer:
        # 初回参加時はトピックの先頭から読む（履歴を全部リプレイする）
        return AIOKafkaConsumer(
            settings.kafka_topic,
            bootstrap_servers=settings.kafka_brokers,
            client_id=settings.consumer_client_id,
            group_id=settings.consumer_group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=True,
        )

    return factory


def create_transports(
    settings: Settings,
    memory_broker: MemoryBroker | None = None,
) -> tuple[ProducerFactory, ConsumerFactory]:
    """設定に応じた (producer_factory, consumer_factory) を返す。"""
    if settings.event_broker == "memory":
        broker = memory_broker or MemoryBroker(settings.memory_partitions)
        return (
            lambda: broker.producer(settings.producer_client_id),
            lambda: broker.consumer(
                settings.kafka_topic,
                settings.consumer_group_id,
                settings.consumer_client_id,
            ),
        )
    return kafka_producer_factory(settings), kafka_consumer_factory(settings)
