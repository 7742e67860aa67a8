"""Tests for the in-memory partitioned log and its consumer groups."""

import asyncio

import pytest
from aiokafka.errors import KafkaConnectionError

from product_service.memory_broker import MemoryBroker

TOPIC = "t"


async def _drain(consumer, n):
    return [await asyncio.wait_for(consumer.getone(), 1.0) for _ in range(n)]


@pytest.mark.asyncio
async def test_same_key_lands_on_same_partition(broker):
    producer = broker.producer()
    await producer.start()

    metas = [await producer.send_and_wait(TOPIC, b"v", key=b"product.created") for _ in range(5)]

    assert len({m.partition for m in metas}) == 1
    assert [m.offset for m in metas] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_new_group_replays_from_earliest(broker):
    producer = broker.producer()
    await producer.start()
    for i in range(3):
        await producer.send_and_wait(TOPIC, f"m{i}".encode(), key=b"k")

    consumer = broker.consumer(TOPIC, "g1")
    await consumer.start()

    records = await _drain(consumer, 3)
    assert [r.value for r in records] == [b"m0", b"m1", b"m2"]


@pytest.mark.asyncio
async def test_group_resumes_from_committed_offset(broker):
    producer = broker.producer()
    await producer.start()
    await producer.send_and_wait(TOPIC, b"a", key=b"k")

    first = broker.consumer(TOPIC, "g1")
    await first.start()
    await _drain(first, 1)
    await first.stop()

    await producer.send_and_wait(TOPIC, b"b", key=b"k")
    second = broker.consumer(TOPIC, "g1")
    await second.start()

    assert [r.value for r in await _drain(second, 1)] == [b"b"]


@pytest.mark.asyncio
async def test_groups_are_independent(broker):
    producer = broker.producer()
    await producer.start()
    await producer.send_and_wait(TOPIC, b"a", key=b"k")

    g1 = broker.consumer(TOPIC, "g1")
    g2 = broker.consumer(TOPIC, "g2")
    await g1.start()
    await g2.start()

    assert [r.value for r in await _drain(g1, 1)] == [b"a"]
    assert [r.value for r in await _drain(g2, 1)] == [b"a"]


@pytest.mark.asyncio
async def test_group_members_get_disjoint_partitions():
    broker = MemoryBroker(num_partitions=4)
    members = [broker.consumer(TOPIC, "g") for _ in range(3)]
    for m in members:
        await m.start()

    assignments = [m.assignment() for m in members]
    assert frozenset().union(*assignments) == frozenset(range(4))
    assert sum(len(a) for a in assignments) == 4

    await members[0].stop()
    remaining = [m.assignment() for m in members[1:]]
    assert frozenset().union(*remaining) == frozenset(range(4))
    assert members[0].assignment() == frozenset()


@pytest.mark.asyncio
async def test_getone_waits_for_new_records(broker):
    producer = broker.producer()
    await producer.start()
    consumer = broker.consumer(TOPIC, "g")
    await consumer.start()

    pending = asyncio.create_task(consumer.getone())
    await asyncio.sleep(0.01)
    assert not pending.done()

    await producer.send_and_wait(TOPIC, b"late", key=b"k")
    record = await asyncio.wait_for(pending, 1.0)
    assert record.value == b"late"


@pytest.mark.asyncio
async def test_outage_fails_clients(broker):
    consumer = broker.consumer(TOPIC, "g")
    await consumer.start()
    pending = asyncio.create_task(consumer.getone())
    await asyncio.sleep(0.01)

    await broker.set_available(False)

    with pytest.raises(KafkaConnectionError):
        await asyncio.wait_for(pending, 1.0)
    with pytest.raises(KafkaConnectionError):
        await broker.producer().start()


def test_rejects_zero_partitions():
    with pytest.raises(ValueError):
        MemoryBroker(num_partitions=0)
