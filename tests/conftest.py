"""Shared fixtures for the product-service test suite."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from product_service.events import ProductEventType
from product_service.memory_broker import MemoryBroker
from product_service.models import CreateProductRequest
from product_service.publisher import EventPublisher
from product_service.store import ProductStore

TOPIC = "product-events"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is truthy or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class SteppingClock:
    """Deterministic clock that advances by ``step`` on every call."""

    def __init__(self, start: datetime | None = None, step=timedelta(seconds=1)):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


class RecordingPublisher(EventPublisher):
    """EventPublisher that remembers every publish attempt in order."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.attempts: list[tuple[ProductEventType, dict]] = []

    async def publish(self, event_type, payload):
        self.attempts.append((event_type, payload))
        return await super().publish(event_type, payload)


class FakeRedis:
    """Just enough of the redis.asyncio hash/sorted-set API for the projection."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = defaultdict(dict)
        self.zsets: dict[str, dict[str, float]] = defaultdict(dict)
        self.closed = False

    async def hset(self, key, field, value):
        self.hashes[key][field] = value
        return 1

    async def hget(self, key, field):
        return self.hashes[key].get(field)

    async def hdel(self, key, field):
        return 1 if self.hashes[key].pop(field, None) is not None else 0

    async def hgetall(self, key):
        return dict(self.hashes[key])

    async def hincrby(self, key, field, amount=1):
        value = int(self.hashes[key].get(field, 0)) + amount
        self.hashes[key][field] = str(value)
        return value

    async def zadd(self, key, mapping):
        added = len(set(mapping) - set(self.zsets[key]))
        self.zsets[key].update(mapping)
        return added

    async def zscore(self, key, member):
        return self.zsets[key].get(member)

    async def zremrangebyscore(self, key, min, max):
        low = float(min)
        high = float(max)
        doomed = [m for m, s in self.zsets[key].items() if low <= s <= high]
        for member in doomed:
            del self.zsets[key][member]
        return len(doomed)

    async def aclose(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def broker() -> MemoryBroker:
    return MemoryBroker(num_partitions=3)


@pytest.fixture
async def publisher(broker):
    pub = RecordingPublisher(lambda: broker.producer("test-producer"), topic=TOPIC)
    await pub.start()
    yield pub
    await pub.stop()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def store(publisher, clock) -> ProductStore:
    return ProductStore(publisher, clock=clock)


@pytest.fixture
def laptop() -> CreateProductRequest:
    return CreateProductRequest(
        name="Laptop", description="Gaming laptop", price=999.99
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
