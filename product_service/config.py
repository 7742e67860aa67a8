"""
Product Service — 設定

環境変数からサービス設定を読み込む。
元の NestJS 版と同じ変数名・デフォルト値を使うので、
同じ docker-compose / Kafka クラスタにそのまま差し替えられる。
"""

import os
from typing import Literal

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """サービス全体の設定値（起動時に一度だけ組み立てる）"""

    kafka_topic: str = "product-events"
    kafka_brokers: list[str] = Field(default_factory=lambda: ["localhost:9092"])
    producer_client_id: str = "nest-kafka-crud-producer"
    consumer_client_id: str = "nest-kafka-crud-consumer"
    consumer_group_id: str = "nest-kafka-crud-consumer"
    # type: イベント種別ごとの順序保証（元実装） / id: 商品ごとの順序保証
    partition_by: Literal["type", "id"] = "type"

    event_broker: Literal["kafka", "memory"] = "kafka"
    memory_partitions: int = Field(default=3, ge=1)
    subscriber_enabled: bool = True

    redis_url: str | None = None

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        brokers = os.environ.get("KAFKA_BROKERS", "localhost:9092")
        return cls(
            kafka_topic=os.environ.get("KAFKA_TOPIC", "product-events"),
            kafka_brokers=[b.strip() for b in brokers.split(",") if b.strip()],
            producer_client_id=os.environ.get(
                "KAFKA_PRODUCER_CLIENT_ID", "nest-kafka-crud-producer"
            ),
            consumer_client_id=os.environ.get(
                "KAFKA_CONSUMER_CLIENT_ID", "nest-kafka-crud-consumer"
            ),
            consumer_group_id=os.environ.get(
                "KAFKA_CONSUMER_GROUP_ID", "nest-kafka-crud-consumer"
            ),
            partition_by=os.environ.get("KAFKA_PARTITION_BY", "type"),
            event_broker=os.environ.get("EVENT_BROKER", "kafka"),
            memory_partitions=int(os.environ.get("MEMORY_PARTITIONS", "3")),
            subscriber_enabled=_env_bool("SUBSCRIBER_ENABLED", True),
            redis_url=os.environ.get("REDIS_URL") or None,
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3000")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
