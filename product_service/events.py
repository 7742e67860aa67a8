"""
Product Service — イベント定義

商品ドメインで発生するイベントと、ブローカーに流すエンベロープ。

ワイヤフォーマット (UTF-8 JSON):
  {"type": "product.created", "payload": {...}, "timestamp": "2024-01-01T00:00:00Z"}
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MalformedMessage


class ProductEventType(str, Enum):
    CREATED = "product.created"
    UPDATED = "product.updated"
    DELETED = "product.deleted"


class EventEnvelope(BaseModel):
    """
    発行・購読の単位。ミューテーション直後に生成され、以後は不変。

    payload はミューテーション後の商品スナップショット
    (deleted の場合は削除直前の状態)。
    """

    model_config = ConfigDict(frozen=True)

    type: ProductEventType
    payload: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes | str | None) -> "EventEnvelope":
        if raw is None:
            raise MalformedMessage("empty message value")
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            return cls.model_validate_json(raw)
        except (ValidationError, UnicodeDecodeError) as e:
            raise MalformedMessage(str(e)) from e
