"""
Product Service — クエリハンドラ (セカンダリインデックス Read 側)

ProductIndexProjection が作った Redis ハッシュを読む。
ストア本体と違い結果整合: イベントが届くまでは古い値が見える。
"""

import json

import redis.asyncio as aioredis

from .projections import INDEX_KEY, STATS_KEY


async def list_indexed_products(redis: aioredis.Redis) -> list[dict]:
    rows = await redis.hgetall(INDEX_KEY)
    products = [json.loads(v) for v in rows.values()]
    return sorted(products, key=lambda p: p["name"])


async def get_indexed_product(redis: aioredis.Redis, product_id: str) -> dict | None:
    raw = await redis.hget(INDEX_KEY, product_id)
    if raw is None:
        return None
    return json.loads(raw)


async def get_index_stats(redis: aioredis.Redis) -> dict:
    rows = await redis.hgetall(STATS_KEY)
    return {k: int(v) for k, v in rows.items()}
