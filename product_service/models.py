"""
Product Service — 商品エンティティとリクエストモデル

JSON 表現は元サービスと同じ camelCase (createdAt / updatedAt)。
Product は frozen なので、ストアから返した参照を書き換えて
内部状態を壊すことはできない。更新は model_copy で新しいインスタンスを作る。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Product(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str
    name: str
    description: str
    price: float
    created_at: datetime
    updated_at: datetime

    def snapshot(self) -> dict:
        """イベントペイロード用の JSON 互換 dict"""
        return self.model_dump(mode="json", by_alias=True)


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str
    price: float = Field(ge=0)


class UpdateProductRequest(BaseModel):
    """部分更新: 指定されたフィールドだけを反映する"""

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    price: float | None = Field(default=None, ge=0)

    def changes(self) -> dict:
        # 明示的に送られたフィールドのみ（null は「未指定」と同じ扱い）
        return {
            k: v
            for k, v in self.model_dump(exclude_unset=True).items()
            if v is not None
        }
