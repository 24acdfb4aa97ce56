import asyncio

import pytest

from base_domains.events import partition_for
from base_domains.memory_broker import InMemoryBroker

TOPIC = "order_topic"


@pytest.fixture
def log():
    return InMemoryBroker({TOPIC: 2})


@pytest.mark.asyncio
async def test_offsets_grow_per_partition(log):
    partition = partition_for("ORD1", 2)
    for i in range(3):
        assert await log.append(TOPIC, "ORD1", f"v{i}".encode()) == partition

    records = await log.fetch(TOPIC, partition, 0, 10, timeout=0)
    assert [r.offset for r in records] == [0, 1, 2]
    assert [r.value for r in records] == [b"v0", b"v1", b"v2"]
    assert all(r.key == "ORD1" for r in records)


@pytest.mark.asyncio
async def test_fetch_from_offset_respects_limit(log):
    partition = partition_for("ORD1", 2)
    for i in range(5):
        await log.append(TOPIC, "ORD1", str(i).encode(), headers={"event_id": str(i)})

    records = await log.fetch(TOPIC, partition, 2, 2, timeout=0)
    assert [r.offset for r in records] == [2, 3]
    assert records[0].headers == {"event_id": "2"}


@pytest.mark.asyncio
async def test_fetch_times_out_on_empty_partition(log):
    assert await log.fetch(TOPIC, 0, 0, 10, timeout=0.01) == []


@pytest.mark.asyncio
async def test_fetch_wakes_up_on_append(log):
    partition = partition_for("ORD9", 2)
    waiter = asyncio.create_task(log.fetch(TOPIC, partition, 0, 10, timeout=5))
    await asyncio.sleep(0)
    await log.append(TOPIC, "ORD9", b"hello")
    records = await asyncio.wait_for(waiter, 1)
    assert [r.value for r in records] == [b"hello"]


def test_unknown_topic(log):
    with pytest.raises(KeyError):
        log.partitions("other")
