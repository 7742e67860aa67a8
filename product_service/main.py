"""
Product Service — FastAPI エントリーポイント

商品 CRUD API。書き込みのたびに product-events トピックへ
ドメインイベントを発行する。同じプロセス内でサブスクライバも動かし、
受信したイベントをログと (REDIS_URL があれば) Redis インデックスに流す。

┌────────┐  /api/products  ┌──────────────┐   Kafka    ┌────────────┐
│ Client │ ──────────────▶ │ ProductStore │ ─────────▶ │ Subscriber │
└────────┘                 └──────────────┘            └─────┬──────┘
                                                              │
                                                      ┌───────▼──────┐
                                                      │ Redis index  │
                                                      └──────────────┘

コンポーネントはモジュールのグローバルには置かず、create_app() で組み立てて
app.state に載せる。起動時に一度だけ接続し、終了時に必ず解放する。
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from . import queries
from .broker import create_transports
from .config import Settings
from .errors import NotFound
from .memory_broker import MemoryBroker
from .models import CreateProductRequest, Product, UpdateProductRequest
from .projections import ProductIndexProjection, chain, log_event
from .publisher import EventPublisher
from .store import ProductStore
from .subscriber import EventSubscriber


def create_app(
    settings: Settings | None = None,
    memory_broker: MemoryBroker | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    producer_factory, consumer_factory = create_transports(settings, memory_broker)

    if redis is None and settings.redis_url:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)

    publisher = EventPublisher(
        producer_factory,
        topic=settings.kafka_topic,
        partition_by=settings.partition_by,
    )
    store = ProductStore(publisher)

    handlers = [log_event]
    if redis is not None:
        handlers.append(ProductIndexProjection(redis))
    subscriber = EventSubscriber(
        consumer_factory,
        chain(handlers),
        topic=settings.kafka_topic,
        group_id=settings.consumer_group_id,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await publisher.start()
        try:
            if settings.subscriber_enabled:
                await subscriber.start()
            try:
                yield
            finally:
                await store.drain()
                await subscriber.stop()
        finally:
            await publisher.stop()
            if redis is not None:
                await redis.aclose()

    app = FastAPI(title="Product Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.publisher = publisher
    app.state.subscriber = subscriber
    app.state.redis = redis

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        # traceback は再送出後にサーバー側で一度だけログに出る
        return JSONResponse(
            status_code=500, content={"detail": "Internal server error"}
        )

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/api/products", status_code=status.HTTP_201_CREATED)
    async def create_product(req: CreateProductRequest):
        product = await store.create(req)
        return product.snapshot()

    @app.patch("/api/products/{product_id}")
    async def update_product(product_id: str, req: UpdateProductRequest):
        product = await store.update(product_id, req.changes())
        return product.snapshot()

    @app.delete("/api/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_product(product_id: str):
        await store.remove(product_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/api/products")
    async def list_products():
        return [p.snapshot() for p in await store.list()]

    @app.get("/api/products/{product_id}")
    async def get_product(product_id: str):
        product: Product = await store.get(product_id)
        return product.snapshot()

    # ── セカンダリインデックス (結果整合) ─────────────

    @app.get("/queries/products")
    async def query_indexed_products():
        if redis is None:
            raise HTTPException(404, "Product index is not configured")
        return await queries.list_indexed_products(redis)

    @app.get("/queries/products/stats")
    async def query_index_stats():
        if redis is None:
            raise HTTPException(404, "Product index is not configured")
        return await queries.get_index_stats(redis)

    @app.get("/queries/products/{product_id}")
    async def query_indexed_product(product_id: str):
        if redis is None:
            raise HTTPException(404, "Product index is not configured")
        product = await queries.get_indexed_product(redis, product_id)
        if not product:
            raise HTTPException(404, "Product not found")
        return product

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "product-service",
            "subscriber": subscriber.state.value,
            "pending_events": store.in_flight,
            "delivery_failures": store.delivery_failures,
        }

    return app


def run() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
